"""
FCFA <-> EUR conversion and price presentation.

FCFA is shown without subunit, EUR with two decimals. All the price surfaces
(catalogue, admin forms, checkout, order totals) go through one
CurrencyConverter so they round the same way.
"""

from __future__ import annotations

import json
import logging
import os
import random
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP, localcontext
from enum import Enum
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_FCFA_PER_EUR = 655.957
CACHE_WINDOW = timedelta(hours=1)
RATE_CACHE_KEY = "darra_currency_rates"

# fr-FR groups thousands with a narrow no-break space
THOUSANDS_SEPARATOR = "\u202f"


class Currency(str, Enum):
    FCFA = "FCFA"
    EUR = "EUR"

    @classmethod
    def parse(cls, value) -> "Currency":
        if isinstance(value, cls):
            return value
        code = str(value or "").strip().upper()
        if code == "XOF":
            return cls.FCFA
        try:
            return cls(code)
        except ValueError:
            raise ValueError(f"Devise inconnue: {value}") from None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _round_half_up(value, places: int) -> Decimal:
    amount = Decimal(str(value))
    if not amount.is_finite():
        raise ValueError(f"Montant invalide: {value!r}")
    with localcontext() as ctx:
        # quantize needs room for every digit of the result
        ctx.prec = max(ctx.prec, amount.adjusted() + places + 2)
        return amount.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def round_amount(amount, currency):
    """Round half-up to the currency's precision: whole FCFA, EUR cents."""
    if Currency.parse(currency) == Currency.FCFA:
        return int(_round_half_up(amount, 0))
    return float(_round_half_up(amount, 2))


@dataclass(frozen=True)
class ExchangeRate:
    fcfa_per_eur: float
    eur_per_fcfa: float
    last_updated: datetime

    @classmethod
    def from_fcfa_per_eur(cls, fcfa_per_eur: float, last_updated: datetime) -> "ExchangeRate":
        if not fcfa_per_eur or fcfa_per_eur <= 0:
            raise ValueError(f"Invalid exchange rate: {fcfa_per_eur!r}")
        return cls(float(fcfa_per_eur), 1 / float(fcfa_per_eur), last_updated)

    def to_dict(self) -> dict:
        return {
            "fcfaPerEur": self.fcfa_per_eur,
            "eurPerFcfa": self.eur_per_fcfa,
            "lastUpdated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExchangeRate":
        last_updated = datetime.fromisoformat(data["lastUpdated"])
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        # eurPerFcfa is always recomputed so the pair stays reciprocal
        return cls.from_fcfa_per_eur(float(data["fcfaPerEur"]), last_updated)


@dataclass(frozen=True)
class Price:
    fcfa: int
    eur: float
    currency: Currency

    def to_dict(self) -> dict:
        return {"fcfa": self.fcfa, "eur": self.eur, "currency": self.currency.value}


# ------------------------------------------------------------------ providers

class RateProviderError(Exception):
    """Raised when a provider cannot produce a usable rate."""


class BaseRateProvider(ABC):
    @abstractmethod
    def fetch_fcfa_per_eur(self) -> float:
        pass


class SimulatedRateProvider(BaseRateProvider):
    """
    Random rate within +/- spread of a fixed baseline.

    Used when no provider URL is configured, for development and tests.
    """

    def __init__(self, baseline: float = DEFAULT_FCFA_PER_EUR, spread: float = 0.02, rng: Optional[random.Random] = None):
        self.baseline = baseline
        self.spread = spread
        self._rng = rng or random.Random()

    def fetch_fcfa_per_eur(self) -> float:
        variation = (self._rng.random() - 0.5) * 2 * self.spread
        return self.baseline * (1 + variation)


class HttpRateProvider(BaseRateProvider):
    """
    exchangerate-api style provider.

    Expects ``GET <url>`` to answer ``{"base": "EUR", "rates": {"XOF": 655.957, ...}}``.
    """

    def __init__(self, url: str, timeout: float = 10, symbol: str = "XOF"):
        self.url = url
        self.timeout = timeout
        self.symbol = symbol

    def fetch_fcfa_per_eur(self) -> float:
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            rate = float(response.json()["rates"][self.symbol])
        except requests.exceptions.Timeout as e:
            raise RateProviderError(f"Timeout calling {self.url}") from e
        except requests.exceptions.RequestException as e:
            raise RateProviderError(f"HTTP error from rate provider: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise RateProviderError(f"Invalid response from rate provider: {e}") from e
        if rate <= 0:
            raise RateProviderError(f"Non-positive rate from provider: {rate}")
        return rate


# ------------------------------------------------------------------ rate cache

class JsonRateCache:
    """Keeps the last exchange rate under a single key of a small JSON file."""

    def __init__(self, path: str, key: str = RATE_CACHE_KEY):
        self.path = path
        self.key = key

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def load(self) -> Optional[ExchangeRate]:
        try:
            entry = self._read().get(self.key)
            return ExchangeRate.from_dict(entry) if entry else None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Could not load cached exchange rate from %s: %s", self.path, e)
            return None

    def store(self, rate: ExchangeRate) -> None:
        try:
            data = self._read()
        except (OSError, ValueError):
            data = {}
        data[self.key] = rate.to_dict()
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


# ------------------------------------------------------------------ converter

class CurrencyConverter:
    """Holds one FCFA/EUR rate pair and converts/formats amounts with it."""

    def __init__(
        self,
        provider: Optional[BaseRateProvider] = None,
        cache: Optional[JsonRateCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cache_window: timedelta = CACHE_WINDOW,
    ):
        self.provider = provider or SimulatedRateProvider()
        self.cache = cache
        self.clock = clock or _utcnow
        self.cache_window = cache_window
        self._lock = threading.Lock()

        rate = cache.load() if cache is not None else None
        self._rate = rate or ExchangeRate.from_fcfa_per_eur(DEFAULT_FCFA_PER_EUR, self.clock())

    def get_current_rate(self) -> ExchangeRate:
        return self._rate

    def should_refresh(self) -> bool:
        return self.clock() - self._rate.last_updated >= self.cache_window

    def refresh_rate(self) -> None:
        """Fetch a new rate once the cache window has elapsed. Never raises."""
        with self._lock:
            if not self.should_refresh():
                return
            try:
                fcfa_per_eur = self.provider.fetch_fcfa_per_eur()
                new_rate = ExchangeRate.from_fcfa_per_eur(fcfa_per_eur, self.clock())
            except Exception as e:
                logger.error("Exchange rate refresh failed, keeping %.3f: %s", self._rate.fcfa_per_eur, e)
                return
            self._rate = new_rate
            logger.info("Exchange rate updated: 1 EUR = %.3f FCFA", new_rate.fcfa_per_eur)

            if self.cache is not None:
                try:
                    self.cache.store(new_rate)
                except (OSError, TypeError, ValueError) as e:
                    logger.error("Could not persist exchange rate to %s: %s", self.cache.path, e)

    def fcfa_to_eur(self, amount) -> float:
        return float(_round_half_up(float(amount) / self._rate.fcfa_per_eur, 2))

    def eur_to_fcfa(self, amount) -> int:
        return int(_round_half_up(float(amount) * self._rate.fcfa_per_eur, 0))

    def convert(self, amount, from_currency, to_currency):
        source = Currency.parse(from_currency)
        target = Currency.parse(to_currency)
        if source == target:
            return amount
        if source == Currency.FCFA:
            return self.fcfa_to_eur(amount)
        return self.eur_to_fcfa(amount)

    def format_price(self, amount, currency) -> str:
        if Currency.parse(currency) == Currency.FCFA:
            return f"{_format_number(amount, 0)} FCFA"
        return f"{_format_number(amount, 2)} €"

    @staticmethod
    def currency_symbol(currency) -> str:
        return "FCFA" if Currency.parse(currency) == Currency.FCFA else "€"

    def create_price(self, base_amount, base_currency=Currency.FCFA) -> Price:
        currency = Currency.parse(base_currency)
        if currency == Currency.FCFA:
            fcfa = round_amount(base_amount, Currency.FCFA)
            return Price(fcfa=fcfa, eur=self.fcfa_to_eur(base_amount), currency=currency)
        eur = round_amount(base_amount, Currency.EUR)
        return Price(fcfa=self.eur_to_fcfa(base_amount), eur=eur, currency=currency)


def _format_number(amount, decimals: int) -> str:
    value = _round_half_up(amount, decimals)
    text = f"{abs(value):,.{decimals}f}"
    text = text.replace(",", THOUSANDS_SEPARATOR).replace(".", ",")
    return f"-{text}" if value < 0 else text
