import asyncio
import logging
import math
import time
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

import httpx

from .errors import OracleUnavailable

logger = logging.getLogger("oracle")

SUN_PER_TRX = 1_000_000


@dataclass(frozen=True)
class Quote:
    rate_usd: float
    required_sun: int
    required_trx: str


def required_sun(price_usd, rate_usd, unit_scale: int = SUN_PER_TRX) -> int:
    """Smallest-unit amount for ``price_usd`` at ``rate_usd``, rounded up."""
    amount = Decimal(str(price_usd)) / Decimal(str(rate_usd)) * unit_scale
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


def sun_to_trx(sun: int) -> str:
    trx = (Decimal(sun) / SUN_PER_TRX).quantize(Decimal("0.01"), rounding=ROUND_CEILING)
    return f"{trx:.2f}"


def _parse_rate(payload) -> float | None:
    # CoinGecko: {"tron": {"usd": 0.12}}, CryptoCompare: {"USD": 0.12}
    if not isinstance(payload, dict):
        return None
    value = payload.get("tron", {}).get("usd") if isinstance(payload.get("tron"), dict) else payload.get("USD")
    if isinstance(value, bool):
        return None
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(rate) or rate <= 0:
        return None
    return rate


class PriceOracle:
    """USD value of one TRX with a freshness cache and a fallback constant."""

    def __init__(
        self,
        sources: list[str],
        cache_seconds: int = 300,
        fallback_rate: float | None = 0.12,
        transport: httpx.AsyncBaseTransport | None = None,
        monotonic=time.monotonic,
    ):
        self.sources = [s for s in sources if s]
        self.cache_seconds = cache_seconds
        self.fallback_rate = fallback_rate if fallback_rate and fallback_rate > 0 else None
        self._transport = transport
        self._monotonic = monotonic
        self._rate: float | None = None
        self._fetched_at: float | None = None
        self._attempted_at: float | None = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        return self._fetched_at is not None and self._monotonic() - self._fetched_at < self.cache_seconds

    def _tried_recently(self) -> bool:
        # a failed refresh also holds off upstream calls for one cache window
        return self._attempted_at is not None and self._monotonic() - self._attempted_at < self.cache_seconds

    async def _fetch(self) -> float | None:
        async with httpx.AsyncClient(transport=self._transport) as client:
            for url in self.sources:
                try:
                    r = await client.get(url, timeout=10)
                    r.raise_for_status()
                    rate = _parse_rate(r.json())
                except (httpx.HTTPError, ValueError):
                    logger.warning("[ORACLE] Price source failed: %s", url, exc_info=True)
                    continue
                if rate is None:
                    logger.warning("[ORACLE] Malformed price payload from %s", url)
                    continue
                return rate
        return None

    async def get_rate(self) -> float:
        if self._fresh():
            return self._rate

        if not self._tried_recently():
            async with self._lock:
                if self._fresh():
                    return self._rate
                if not self._tried_recently():
                    rate = await self._fetch()
                    self._attempted_at = self._monotonic()
                    if rate is not None:
                        self._rate = rate
                        self._fetched_at = self._attempted_at
                        return rate

        if self._rate is not None:
            logger.warning("[ORACLE] Upstream unavailable, using last known rate %s", self._rate)
            return self._rate
        if self.fallback_rate is not None:
            logger.warning("[ORACLE] Upstream unavailable, using fallback rate %s", self.fallback_rate)
            return self.fallback_rate
        raise OracleUnavailable("No TRX price available")

    async def quote(self, price_usd) -> Quote:
        rate = await self.get_rate()
        sun = required_sun(price_usd, rate)
        return Quote(rate_usd=rate, required_sun=sun, required_trx=sun_to_trx(sun))
