"""
Tier entitlement and lifecycle engine for the inventory/point-of-sale backend.

Subpackages:
- entitlements: feature catalog, usage tracking, tier status resolution,
  feature access validation, tier changes, notifications and audit
- jobs: lifecycle scheduler (automatic downgrade + expiration notices)
- models: SQLAlchemy models for accounts, feature definitions, usage,
  tier history and audit logs
"""

__version__ = "1.0.0"
