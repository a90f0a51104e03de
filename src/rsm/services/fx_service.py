from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

import requests

from rsm.domain.errors import FxUnavailableError, ValidationError
from rsm.domain.models import ExchangeRateSnapshot

log = logging.getLogger("rsm.fx")

PRIMARY_SOURCE = "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/usd.json"
FALLBACK_SOURCE = "https://latest.currency-api.pages.dev/v1/currencies/usd.json"

# Rates closer than this to the current one are not recorded again.
MIN_RATE_CHANGE = 0.01


def _iso(ts: datetime) -> str:
    return ts.replace(microsecond=0).isoformat(sep=" ")


class FxService:
    def __init__(
        self,
        repo,
        default_rate: float = 1000.0,
        clock: Callable[[], datetime] = datetime.now,
        sources: tuple[str, ...] = (PRIMARY_SOURCE, FALLBACK_SOURCE),
    ):
        self.repo = repo
        self.default_rate = float(default_rate)
        self.clock = clock
        self.sources = sources

    def _fetch_json(self, url: str) -> dict:
        r = requests.get(url, timeout=10)
        r.raise_for_status()
        return r.json()

    def _extract_usd_ars(self, data: dict) -> float:
        # common structure: {"date":"YYYY-MM-DD","usd":{"ars":1450.12, ...}}
        if "usd" in data and isinstance(data["usd"], dict):
            v = data["usd"].get("ars")
            if v is not None:
                return self._validate_rate(v)

        for _k, v in data.items():
            if isinstance(v, dict) and "ars" in v:
                return self._validate_rate(v["ars"])

        raise FxUnavailableError(f"FX API response missing ARS rate. Raw: {data}")

    def _validate_rate(self, value: object) -> float:
        rate = float(value)
        if rate <= 0:
            raise FxUnavailableError(f"FX rate must be > 0. Received: {rate}")
        return rate

    def current_rate(self) -> ExchangeRateSnapshot:
        latest = self.repo.get_latest_fx_rate()
        if latest is not None:
            return latest
        log.warning("fx_no_rate_recorded using_default=%.4f", self.default_rate)
        return ExchangeRateSnapshot(id=None, rate=self.default_rate, recorded_at=_iso(self.clock()), notes="default")

    def rate_as_of(self, ts: datetime | str) -> ExchangeRateSnapshot:
        """Rate in force at ``ts``; the current rate when nothing older exists."""
        ts_iso = ts if isinstance(ts, str) else _iso(ts)
        snap = self.repo.get_fx_rate_as_of(ts_iso)
        if snap is not None:
            return snap
        log.warning("fx_no_rate_as_of ts=%s using_current", ts_iso)
        return self.current_rate()

    def record_rate(self, rate: float, notes: Optional[str] = None) -> Optional[ExchangeRateSnapshot]:
        try:
            value = float(rate)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid exchange rate: {rate!r}") from e
        if value <= 0:
            raise ValidationError("Exchange rate must be > 0.")

        latest = self.repo.get_latest_fx_rate()
        if latest is not None and abs(latest.rate - value) < MIN_RATE_CHANGE:
            log.info("fx_rate_unchanged rate=%.4f", value)
            return None

        recorded_at = _iso(self.clock())
        rid = self.repo.add_fx_rate(value, recorded_at, notes)
        log.info("fx_rate_recorded id=%s rate=%.4f", rid, value)
        return ExchangeRateSnapshot(id=rid, rate=value, recorded_at=recorded_at, notes=notes)

    def history(self, limit: Optional[int] = None) -> list[ExchangeRateSnapshot]:
        return self.repo.list_fx_rates(limit)

    def refresh_from_remote(self) -> Optional[ExchangeRateSnapshot]:
        last_err = None
        for url in self.sources:
            try:
                data = self._fetch_json(url)
                rate = self._extract_usd_ars(data)
                return self.record_rate(rate, notes=f"remote:{url}")
            except (requests.RequestException, ValueError, FxUnavailableError) as e:
                last_err = e
                log.warning("fx_source_failed url=%s error=%s", url, e)

        raise FxUnavailableError(f"FX fetch failed on every source. Last error: {last_err}")
