"""
Tier feature definition loader.

Loads reference feature definitions from config/tier_features.yml, the
single source of truth for per-tier limits seeded into
tier_feature_definitions.

Usage:
    from tier_engine.config.feature_catalog import load_feature_definitions

    definitions = load_feature_definitions()
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from tier_engine.entitlements.features import FeatureName
from tier_engine.models.user import SubscriptionPlan

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "tier_features.yml"


@dataclass(frozen=True)
class FeatureDefinitionSpec:
    """One (tier, feature) row as declared in YAML."""

    tier: SubscriptionPlan
    feature: FeatureName
    limit: Optional[int]
    enabled: bool
    description: Optional[str] = None


def _resolve_path(config_path: Optional[str] = None) -> Path:
    explicit = config_path or os.getenv("TIER_FEATURES_CONFIG")
    if explicit:
        return Path(explicit)

    candidates = [
        # Repository root, from backend/tier_engine/config/
        Path(__file__).parent.parent.parent.parent / "config" / CONFIG_FILENAME,
        Path(os.getcwd()) / "config" / CONFIG_FILENAME,
        Path(os.getcwd()) / ".." / "config" / CONFIG_FILENAME,
    ]

    for p in candidates:
        resolved = p.resolve()
        if resolved.exists():
            return resolved

    raise FileNotFoundError(
        f"{CONFIG_FILENAME} not found in: {[str(p) for p in candidates]}"
    )


def _parse_limit(tier: str, feature: str, raw: Any) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ValueError(
            f"{tier}.{feature}: limit must be a non-negative integer or null, got {raw!r}"
        )
    return raw


def parse_feature_definitions(raw: Dict[str, Any]) -> List[FeatureDefinitionSpec]:
    """Validate a parsed YAML document and return its definitions."""
    tiers = raw.get("tiers")
    if not isinstance(tiers, dict) or not tiers:
        raise ValueError("feature config must contain a non-empty 'tiers' mapping")

    definitions: List[FeatureDefinitionSpec] = []
    for tier_name, features in tiers.items():
        try:
            tier = SubscriptionPlan(tier_name)
        except ValueError:
            raise ValueError(f"Unknown tier in feature config: {tier_name!r}")

        for feature_name, spec in (features or {}).items():
            feature = FeatureName.parse(feature_name)
            if feature is None or feature.value != feature_name:
                raise ValueError(f"Unknown feature in feature config: {tier_name}.{feature_name}")
            spec = spec or {}
            definitions.append(
                FeatureDefinitionSpec(
                    tier=tier,
                    feature=feature,
                    limit=_parse_limit(tier_name, feature_name, spec.get("limit")),
                    enabled=bool(spec.get("enabled", True)),
                    description=spec.get("description"),
                )
            )

    return definitions


def load_feature_definitions(config_path: Optional[str] = None) -> List[FeatureDefinitionSpec]:
    """Read and validate the feature definition YAML."""
    path = _resolve_path(config_path)
    logger.info("Loading tier feature definitions from %s", path)

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    definitions = parse_feature_definitions(raw)
    logger.info(
        "Loaded %d tier feature definitions for tiers=%s",
        len(definitions),
        sorted({d.tier.value for d in definitions}),
    )
    return definitions
