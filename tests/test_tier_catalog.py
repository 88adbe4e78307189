import json
from pathlib import Path

import pytest

from tiergate.loader import (
    DEFAULT_TIER_LIMITS,
    GEMINI_FLASH,
    GEMINI_PRO,
    TierCatalog,
    load_tier_limits,
)
from tiergate.models import Resource, Tier

REPO_TIERS = Path(__file__).resolve().parents[1] / "config" / "tiers.json"


def test_default_catalog_limits():
    catalog = TierCatalog()
    free = catalog.limits_for(Tier.FREE)
    paid = catalog.limits_for(Tier.PAID)

    assert free.max_reports_per_week == 1
    assert free.max_chat_messages_per_report == 1
    assert free.max_snapshots_per_day == 0
    assert free.max_data_days == 30
    assert not free.uses_pooled_quota

    assert paid.max_communications_per_day == 10
    assert paid.max_snapshots_per_day == 1
    assert paid.max_data_days == 360
    assert paid.data_range_options == (7, 30, 180, 360)
    assert paid.uses_pooled_quota


def test_limit_for_unmetered_resource_is_none():
    paid = TierCatalog().limits_for(Tier.PAID)
    assert paid.limit_for(Resource.WEEKLY_REPORT) is None
    assert paid.limit_for(Resource.COMMUNICATION) == 10


def test_upgrade_path_only_from_entry_tier():
    catalog = TierCatalog()
    assert catalog.can_upgrade(Tier.FREE) is True
    assert catalog.can_upgrade(Tier.PAID) is False
    assert catalog.top_tier() is Tier.PAID


def test_model_allow_list_and_default():
    catalog = TierCatalog()
    assert catalog.is_model_allowed(Tier.PAID, GEMINI_PRO)
    assert not catalog.is_model_allowed(Tier.FREE, GEMINI_PRO)
    assert catalog.default_model(Tier.FREE) == GEMINI_FLASH


def test_shipped_config_matches_defaults():
    assert load_tier_limits(str(REPO_TIERS)) == dict(DEFAULT_TIER_LIMITS)


def test_from_file_overrides_limits(tmp_path):
    raw = json.loads(REPO_TIERS.read_text())
    raw["tiers"]["paid"]["max_communications_per_day"] = 25
    path = tmp_path / "tiers.json"
    path.write_text(json.dumps(raw))

    catalog = TierCatalog.from_file(str(path))
    assert catalog.limits_for(Tier.PAID).max_communications_per_day == 25


def test_unknown_tier_rejected(tmp_path):
    path = tmp_path / "tiers.json"
    path.write_text(json.dumps({"tiers": {"enterprise": {}}}))
    with pytest.raises(ValueError, match="Unknown tier"):
        load_tier_limits(str(path))


def test_missing_tiers_object_rejected(tmp_path):
    path = tmp_path / "tiers.json"
    path.write_text(json.dumps({"free": {}}))
    with pytest.raises(ValueError, match="tiers"):
        load_tier_limits(str(path))


def test_catalog_requires_every_tier():
    with pytest.raises(ValueError, match="missing tiers"):
        TierCatalog({Tier.FREE: DEFAULT_TIER_LIMITS[Tier.FREE]})


def test_default_model_must_be_allowed(tmp_path):
    raw = json.loads(REPO_TIERS.read_text())
    raw["tiers"]["free"]["default_model"] = GEMINI_PRO
    path = tmp_path / "tiers.json"
    path.write_text(json.dumps(raw))
    with pytest.raises(ValueError, match="default_model"):
        load_tier_limits(str(path))
