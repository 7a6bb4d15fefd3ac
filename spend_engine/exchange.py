"""Exchange-rate lookup used to pre-fill conversion rates before commit."""
from __future__ import annotations

import json
import logging
import re
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Tuple

from spend_engine.errors import ExchangeRateError, ValidationError

logger = logging.getLogger(__name__)

_DEFAULT_URL = "https://open.er-api.com/v6/latest"
_CODE = re.compile(r"^[A-Z]{3}$")


def normalize_code(code: str) -> str:
    value = str(code or "").strip().upper()
    if not _CODE.match(value):
        raise ValidationError(
            "Currency codes must be 3-letter ISO codes (e.g. EUR, CZK)", {"currency": code}
        )
    return value


@dataclass
class ExchangeRateClient:
    """Rates from an open.er-api.com compatible endpoint with a TTL cache.

    When the endpoint fails, a stale cached rate is returned if one exists.
    """
    url: str = _DEFAULT_URL
    ttl_seconds: float = 3600
    timeout_seconds: float = 10
    clock: Callable[[], float] = time.monotonic
    _cache: Dict[Tuple[str, str], Tuple[float, float]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _fetch(self, source: str) -> dict:
        req = urllib.request.Request(f"{self.url.rstrip('/')}/{source}", method="GET")
        req.add_header("Accept", "application/json")
        logger.debug("Exchange rate GET %s", req.full_url)
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
            return json.load(resp)

    def get_rate(self, source: str, target: str) -> float:
        source, target = normalize_code(source), normalize_code(target)
        if source == target:
            return 1.0

        key = (source, target)
        with self._lock:
            cached = self._cache.get(key)
        if cached and self.clock() - cached[1] < self.ttl_seconds:
            return cached[0]

        try:
            data = self._fetch(source)
            rate = (data.get("rates") or {}).get(target)
            if data.get("result") != "success" or not rate:
                raise ExchangeRateError(f"Could not find rate for {source} to {target}")
            rate = float(rate)
        except (urllib.error.URLError, OSError, ValueError, ExchangeRateError) as exc:
            if cached:
                logger.warning("Exchange rate lookup failed (%s); using cached %s/%s", exc, source, target)
                return cached[0]
            if isinstance(exc, ExchangeRateError):
                raise
            raise ExchangeRateError(
                f"Failed to fetch exchange rate {source}/{target}: {exc}",
                {"from": source, "to": target},
            ) from exc

        with self._lock:
            self._cache[key] = (rate, self.clock())
        return rate

    def get_rates(self, currencies: Iterable[str], target: str) -> Dict[str, float]:
        """Quote every currency it can; failures are logged and left out.

        A missing entry means the rate has to be entered by hand.
        """
        target = normalize_code(target)
        rates: Dict[str, float] = {}
        for code in currencies:
            try:
                code = normalize_code(code)
                rates[code] = self.get_rate(code, target)
            except (ExchangeRateError, ValidationError) as exc:
                logger.warning("No exchange rate for %s/%s: %s", code, target, exc)
        return rates


def client_from_config(config: dict) -> ExchangeRateClient:
    cfg = config.get("exchange_rate", {}) or {}
    return ExchangeRateClient(
        url=cfg.get("url", _DEFAULT_URL),
        ttl_seconds=float(cfg.get("ttl_seconds", 3600)),
        timeout_seconds=float(cfg.get("timeout_seconds", 10)),
    )
