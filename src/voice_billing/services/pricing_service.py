from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from ..cache.base import AsyncCacheBackend
from ..cache.memory import InMemoryAsyncCache
from ..db.base import BaseDBManager
from ..exceptions import ValidationError
from ..models.pricing import PRICING_CATEGORY, PricingConfig, SystemSetting


logger = logging.getLogger(__name__)

DEFAULT_PRICING = PricingConfig()


class PricingService:
    """
    Effective prices: admin overrides stored in `system_settings` layered
    over the built-in defaults, cached for a few minutes.

    An override only wins when it is truthy, so a stored 0 falls back to
    the default price. When the settings cannot be read the defaults are
    returned and nothing is cached.
    """

    CACHE_KEY = "pricing:config"

    def __init__(
        self,
        db: BaseDBManager,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._cache = cache or InMemoryAsyncCache()
        self._cache_ttl_seconds = cache_ttl_seconds

    async def get_pricing(self) -> PricingConfig:
        cached = await self._cache.get(self.CACHE_KEY)
        if isinstance(cached, PricingConfig):
            return cached

        try:
            overrides = await self._db.get_settings_by_category(PRICING_CATEGORY)
        except Exception:
            logger.exception("Failed to fetch pricing from database; using defaults")
            return DEFAULT_PRICING

        values: Dict[str, Any] = {}
        for name in PricingConfig.model_fields:
            values[name] = overrides.get(name) or getattr(DEFAULT_PRICING, name)
        pricing = PricingConfig(**values)

        await self._cache.set(self.CACHE_KEY, pricing, ttl_seconds=self._cache_ttl_seconds)
        return pricing

    async def clear_cache(self) -> None:
        await self._cache.delete(self.CACHE_KEY)

    async def update_pricing(self, values: Mapping[str, Any], updated_by: str) -> PricingConfig:
        """Persist the given price overrides and drop the cached config."""
        for key, value in values.items():
            if key not in PricingConfig.model_fields:
                raise ValidationError(f"Unknown pricing setting: {key}")
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ValidationError(f"Invalid value for {key}")

        for key, value in values.items():
            await self._db.upsert_setting(
                SystemSetting(
                    key=key,
                    value=value,
                    category=PRICING_CATEGORY,
                    is_public=True,
                    updated_by=updated_by,
                )
            )

        await self.clear_cache()
        logger.info(
            "Pricing settings updated",
            extra={"updated_by": updated_by, "settings": dict(values)},
        )
        return await self.get_pricing()

    async def get_assistant_cost(self) -> float:
        return (await self.get_pricing()).assistant_base_cost

    async def get_payg_minute_cost(self) -> float:
        return (await self.get_pricing()).cost_per_minute_payg

    async def get_overage_minute_cost(self) -> float:
        return (await self.get_pricing()).cost_per_minute_overage

    async def get_minimum_topup_amount(self) -> float:
        return (await self.get_pricing()).minimum_topup_amount

    async def get_initial_payg_charge(self) -> float:
        return (await self.get_pricing()).initial_payg_charge

    async def get_payg_initial_credits(self) -> float:
        return (await self.get_pricing()).payg_initial_credits
