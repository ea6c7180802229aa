"""Currency conversion with a cached, pluggable rate source.

A missing rate is reported as ``None``, never raised: callers decide the
fallback (keep the amount unconverted and flag it).
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.receipt import FxRateCache
from app.utils.clock import as_utc, iso_now, now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionResult:
    original_amount: float
    original_currency: str
    converted_amount: float
    base_currency: str
    exchange_rate: float
    conversion_date: str


class RateSource(abc.ABC):
    """Where exchange rates come from. ``None`` means unavailable."""

    name: str = "base"

    @abc.abstractmethod
    def get_rate(self, from_code: str, to_code: str) -> Optional[float]:
        """Return how many *to_code* units one *from_code* unit buys."""


class FrankfurterRateSource(RateSource):
    """Free ECB-backed rates, no API key required."""

    name = "frankfurter"

    def __init__(
        self,
        base_url: str = "https://api.frankfurter.app/latest",
        *,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._client = client

    def _fetch(self, client: httpx.Client, from_code: str, to_code: str) -> httpx.Response:
        return client.get(self._base_url, params={"from": from_code, "to": to_code})

    def get_rate(self, from_code: str, to_code: str) -> Optional[float]:
        try:
            if self._client is not None:
                resp = self._fetch(self._client, from_code, to_code)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    resp = self._fetch(client, from_code, to_code)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Rate lookup %s->%s failed: %s", from_code, to_code, exc)
            return None

        # {"amount": 1, "base": "USD", "date": "2024-01-01", "rates": {"GBP": 0.79}}
        rate = (data.get("rates") or {}).get(to_code) if isinstance(data, dict) else None
        if isinstance(rate, bool) or not isinstance(rate, (int, float)) or rate <= 0:
            logger.error("Invalid rate payload for %s->%s: %s", from_code, to_code, data)
            return None
        return float(rate)


class CurrencyNormalizer:
    def __init__(
        self,
        db: Session,
        rate_source: RateSource,
        *,
        base_currency: str,
        cache_ttl_hours: int = 24,
        clock: Optional[Callable[[], str]] = None,
    ) -> None:
        self.db = db
        self.rate_source = rate_source
        self.base_currency = base_currency.upper()
        self.cache_ttl = timedelta(hours=cache_ttl_hours)
        self._clock = clock or iso_now

    def _cached_rate(self, from_code: str, to_code: str) -> Optional[float]:
        try:
            row = self.db.execute(
                select(FxRateCache).where(
                    FxRateCache.from_currency == from_code,
                    FxRateCache.to_currency == to_code,
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            if as_utc(now_utc(self.db)) > as_utc(row.expires_at):
                logger.info("Cache expired for %s -> %s", from_code, to_code)
                self.db.delete(row)
                self.db.commit()
                return None
            return float(row.rate)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Rate cache read failed for %s -> %s", from_code, to_code)
            return None

    def _store_rate(self, from_code: str, to_code: str, rate: float) -> None:
        now = now_utc(self.db)
        try:
            self.db.merge(
                FxRateCache(
                    from_currency=from_code,
                    to_currency=to_code,
                    rate=rate,
                    cached_at=now,
                    expires_at=now + self.cache_ttl,
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            # The fetched rate is still usable without the cache entry.
            self.db.rollback()
            logger.exception("Rate cache write failed for %s -> %s", from_code, to_code)

    def get_rate(self, from_code: str, to_code: str) -> Optional[float]:
        cached = self._cached_rate(from_code, to_code)
        if cached is not None:
            logger.debug("Using cached exchange rate: 1 %s = %s %s", from_code, cached, to_code)
            return cached

        rate = self.rate_source.get_rate(from_code, to_code)
        if rate is None:
            return None
        self._store_rate(from_code, to_code, rate)
        logger.info("Fetched exchange rate: 1 %s = %s %s", from_code, rate, to_code)
        return rate

    def convert(self, amount: float, from_code: str, to_code: str) -> Optional[ConversionResult]:
        source = from_code.strip().upper()
        target = to_code.strip().upper()
        if source == target:
            return ConversionResult(
                original_amount=amount,
                original_currency=source,
                converted_amount=amount,
                base_currency=target,
                exchange_rate=1.0,
                conversion_date=self._clock(),
            )

        rate = self.get_rate(source, target)
        if rate is None:
            logger.warning("Rate unavailable for %s -> %s", source, target)
            return None
        return ConversionResult(
            original_amount=amount,
            original_currency=source,
            converted_amount=round(amount * rate, 2),
            base_currency=target,
            exchange_rate=rate,
            conversion_date=self._clock(),
        )

    def convert_to_base(self, amount: float, currency: Optional[str] = None) -> Optional[ConversionResult]:
        """Missing currency metadata means the amount is already in base currency."""
        if not currency or not currency.strip():
            return self.convert(amount, self.base_currency, self.base_currency)
        return self.convert(amount, currency, self.base_currency)
