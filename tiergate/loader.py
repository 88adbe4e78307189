from __future__ import annotations

import json
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from .models import Tier, TierLimits

GEMINI_FLASH = "gemini-3-flash-preview"
GEMINI_PRO = "gemini-3-pro-preview"

DEFAULT_TIER_LIMITS: Mapping[Tier, TierLimits] = MappingProxyType(
    {
        Tier.FREE: TierLimits(
            tier=Tier.FREE,
            max_data_days=30,
            data_range_options=(7, 30),
            max_reports_per_week=1,
            max_chat_messages_per_report=1,
            max_snapshots_per_day=0,
            allowed_models=frozenset({GEMINI_FLASH}),
            default_model=GEMINI_FLASH,
            can_view_report_history=False,
        ),
        Tier.PAID: TierLimits(
            tier=Tier.PAID,
            max_data_days=360,
            data_range_options=(7, 30, 180, 360),
            max_communications_per_day=10,
            max_snapshots_per_day=1,
            allowed_models=frozenset({GEMINI_FLASH, GEMINI_PRO}),
            default_model=GEMINI_FLASH,
            can_view_report_history=True,
        ),
    }
)

# Ascending order of entitlement. The last tier has nothing to upgrade to.
TIER_ORDER: Tuple[Tier, ...] = (Tier.FREE, Tier.PAID)


class TierCatalog:
    """Immutable tier -> limits mapping, fixed at process configuration time."""

    def __init__(self, limits: Optional[Mapping[Tier, TierLimits]] = None) -> None:
        resolved = dict(limits or DEFAULT_TIER_LIMITS)
        missing = [tier.value for tier in TIER_ORDER if tier not in resolved]
        if missing:
            raise ValueError(f"tier catalog is missing tiers: {', '.join(missing)}")
        self._limits: Mapping[Tier, TierLimits] = MappingProxyType(resolved)

    @classmethod
    def from_file(cls, config_path: str) -> "TierCatalog":
        return cls(load_tier_limits(config_path))

    def limits_for(self, tier: Tier) -> TierLimits:
        return self._limits[Tier(tier)]

    def tiers(self) -> Tuple[Tier, ...]:
        return TIER_ORDER

    def top_tier(self) -> Tier:
        return TIER_ORDER[-1]

    def can_upgrade(self, tier: Tier) -> bool:
        return Tier(tier) != self.top_tier()

    def is_model_allowed(self, tier: Tier, model_id: str) -> bool:
        return model_id in self.limits_for(tier).allowed_models

    def default_model(self, tier: Tier) -> str:
        return self.limits_for(tier).default_model


def load_tier_limits(config_path: str) -> Dict[Tier, TierLimits]:
    """Load tier limits from a JSON file shaped like config/tiers.json."""
    with Path(config_path).open("r", encoding="utf-8") as handle:
        raw = json.load(handle)
    if not isinstance(raw, dict):
        raise ValueError("tier config must contain a top-level object")
    return _parse_config(raw)


def _parse_config(raw: dict) -> Dict[Tier, TierLimits]:
    tiers_raw = raw.get("tiers")
    if not isinstance(tiers_raw, dict):
        raise ValueError("tier config must include an object field named 'tiers'")

    parsed: Dict[Tier, TierLimits] = {}
    for tier_key, tier_data in tiers_raw.items():
        try:
            tier = Tier(str(tier_key).strip())
        except ValueError:
            raise ValueError(f"Unknown tier: {tier_key!r}") from None
        if not isinstance(tier_data, dict):
            raise ValueError(f"tier '{tier.value}' must be an object")

        models = tier_data.get("allowed_models")
        if not isinstance(models, list) or not models:
            raise ValueError(f"tier '{tier.value}' allowed_models must be a non-empty list")
        normalized_models = [str(m).strip() for m in models if str(m).strip()]

        options = tier_data.get("data_range_options", [tier_data.get("max_data_days", 0)])
        if not isinstance(options, list):
            raise ValueError(f"tier '{tier.value}' data_range_options must be a list")

        parsed[tier] = TierLimits(
            tier=tier,
            max_data_days=_int_field(tier, tier_data, "max_data_days", required=True),
            data_range_options=tuple(int(o) for o in options),
            max_reports_per_week=_int_field(tier, tier_data, "max_reports_per_week"),
            max_chat_messages_per_report=_int_field(tier, tier_data, "max_chat_messages_per_report"),
            max_communications_per_day=_int_field(tier, tier_data, "max_communications_per_day"),
            max_snapshots_per_day=_int_field(tier, tier_data, "max_snapshots_per_day", required=True),
            allowed_models=frozenset(normalized_models),
            default_model=str(tier_data.get("default_model", normalized_models[0])).strip(),
            can_view_report_history=bool(tier_data.get("can_view_report_history", False)),
        )

    return parsed


def _int_field(tier: Tier, data: dict, name: str, required: bool = False) -> Optional[int]:
    value = data.get(name)
    if value is None:
        if required:
            raise ValueError(f"tier '{tier.value}' is missing {name}")
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"tier '{tier.value}' {name} must be an integer")
    return value
