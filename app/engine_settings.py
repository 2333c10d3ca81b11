"""
Engine Settings Loader

Provides cached access to the per-organization configuration of the credit
calculation engine (fee rates, growth floor, fixed-base percentage, lookback
claim policy). Settings live under ``org_settings.defaults.assessment_engine``
in Supabase; anything missing falls back to DEFAULT_ENGINE_SETTINGS.
"""

import logging
from dataclasses import dataclass, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# In-memory cache with TTL
_settings_cache: Dict[str, "EngineSettings"] = {}
_cache_timestamps: Dict[str, datetime] = {}
CACHE_TTL_SECONDS = 300  # 5 minutes


class LookbackPolicy(str, Enum):
    """How ``rd_credit_years_previously_claimed`` maps onto the lookback years."""
    MOST_RECENT = "most_recent"  # n claimed years = prior years 1..n
    OLDEST = "oldest"            # n claimed years = prior years 3, 2, ...


# Org settings may raise the projection growth floor, never lower it
MIN_GROWTH_RATE_FLOOR = 5.0

DEFAULT_ENGINE_SETTINGS = {
    "growth_rate_floor": MIN_GROWTH_RATE_FLOOR,
    "fixed_base_percentage": 0.03,
    "federal_fee_rate": 0.75,
    "state_fee_rate": 0.25,
    "default_tax_year": 2024,
    "lookback_policy": LookbackPolicy.MOST_RECENT.value,
}


@dataclass(frozen=True)
class EngineSettings:
    growth_rate_floor: float = DEFAULT_ENGINE_SETTINGS["growth_rate_floor"]
    fixed_base_percentage: float = DEFAULT_ENGINE_SETTINGS["fixed_base_percentage"]
    federal_fee_rate: float = DEFAULT_ENGINE_SETTINGS["federal_fee_rate"]
    state_fee_rate: float = DEFAULT_ENGINE_SETTINGS["state_fee_rate"]
    default_tax_year: int = DEFAULT_ENGINE_SETTINGS["default_tax_year"]
    lookback_policy: LookbackPolicy = LookbackPolicy.MOST_RECENT

    def to_dict(self) -> dict:
        data = asdict(self)
        data["lookback_policy"] = self.lookback_policy.value
        return data

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "EngineSettings":
        """Build settings from a stored dict, ignoring unknown or malformed keys."""
        settings = cls()
        if not raw:
            return settings

        updates = {}
        for key in ("growth_rate_floor", "fixed_base_percentage", "federal_fee_rate", "state_fee_rate"):
            if key in raw:
                try:
                    updates[key] = max(0.0, float(raw[key]))
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring invalid engine setting {key}={raw[key]!r}")

        for key in ("federal_fee_rate", "state_fee_rate"):
            if key in updates:
                updates[key] = min(1.0, updates[key])

        if "growth_rate_floor" in updates and updates["growth_rate_floor"] < MIN_GROWTH_RATE_FLOOR:
            logger.warning(
                f"Growth rate floor {updates['growth_rate_floor']} is below the "
                f"{MIN_GROWTH_RATE_FLOOR}% minimum; using {MIN_GROWTH_RATE_FLOOR}"
            )
            updates["growth_rate_floor"] = MIN_GROWTH_RATE_FLOOR

        if "default_tax_year" in raw:
            try:
                updates["default_tax_year"] = int(raw["default_tax_year"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid engine setting default_tax_year={raw['default_tax_year']!r}")

        if "lookback_policy" in raw:
            try:
                updates["lookback_policy"] = LookbackPolicy(raw["lookback_policy"])
            except ValueError:
                logger.warning(f"Ignoring unknown lookback policy {raw['lookback_policy']!r}")

        return replace(settings, **updates)


def get_engine_settings(supabase, org_id: Optional[str], force_refresh: bool = False) -> EngineSettings:
    """
    Get engine settings for an organization with caching.

    Args:
        supabase: Supabase client (may be None when the store is not configured)
        org_id: Organization ID
        force_refresh: If True, bypass cache

    Returns:
        EngineSettings, falling back to defaults when nothing is stored
    """
    if not supabase or not org_id:
        return EngineSettings()

    now = datetime.utcnow()

    if not force_refresh and org_id in _settings_cache:
        cache_time = _cache_timestamps.get(org_id)
        if cache_time and (now - cache_time).total_seconds() < CACHE_TTL_SECONDS:
            return _settings_cache[org_id]

    raw = None
    try:
        result = supabase.table("org_settings")\
            .select("defaults")\
            .eq("organization_id", org_id)\
            .single()\
            .execute()
        if result.data:
            raw = (result.data.get("defaults") or {}).get("assessment_engine")
    except Exception as e:
        logger.warning(f"Failed to fetch engine settings for {org_id}: {e}")
        return EngineSettings()

    settings = EngineSettings.from_dict(raw)
    _settings_cache[org_id] = settings
    _cache_timestamps[org_id] = now
    return settings


def invalidate_cache(org_id: Optional[str] = None):
    """
    Invalidate settings cache.

    Args:
        org_id: Specific org to invalidate, or None for all
    """
    if org_id:
        _settings_cache.pop(org_id, None)
        _cache_timestamps.pop(org_id, None)
    else:
        _settings_cache.clear()
        _cache_timestamps.clear()
