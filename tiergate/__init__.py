"""Subscription tier entitlements: quota ledger, subscription registry, provider sync."""
