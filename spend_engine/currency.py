# spend_engine/currency.py
"""Conversion of parsed statement amounts into the base currency."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, List, Mapping

from spend_engine.core.models import ParsedRecord, TransactionDraft
from spend_engine.errors import ConversionRateMissingError, InvalidRateError

# ISO 4217 exponents that differ from the usual two decimal places.
_MINOR_UNITS: Dict[str, int] = {
    "BHD": 3,
    "CLP": 0,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "VND": 0,
}


def minor_unit(currency: str) -> int:
    return _MINOR_UNITS.get(currency.upper(), 2)


def quantize(amount, currency: str) -> Decimal:
    """Round *amount* half-up to the minor unit of *currency*."""
    exp = Decimal(1).scaleb(-minor_unit(currency))
    return Decimal(str(amount)).quantize(exp, rounding=ROUND_HALF_UP)


def validate_rate(currency: str, rate) -> Decimal:
    if isinstance(rate, bool):
        raise InvalidRateError(currency, rate)
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRateError(currency, rate)
    if not value.is_finite() or value <= 0:
        raise InvalidRateError(currency, rate)
    return value


def convert(record: ParsedRecord, rate, base_currency: str) -> TransactionDraft:
    """Express *record* in *base_currency*.

    Base-currency records keep their amount with a rate of 1. Foreign records
    are multiplied by *rate* and keep the original amount and currency.
    """
    base = base_currency.upper()
    currency = (record.currency or base).upper()
    if currency == base:
        return TransactionDraft(
            date=record.date,
            amount=quantize(record.amount, base),
            description=record.description,
            bank=record.bank,
            source=record.source,
        )

    value = validate_rate(currency, rate)
    original = quantize(record.amount, currency)
    return TransactionDraft(
        date=record.date,
        amount=quantize(original * value, base),
        description=record.description,
        bank=record.bank,
        conversion_rate=value,
        original_amount=original,
        original_currency=currency,
        source=record.source,
    )


def resolve_rates(
    currencies: Iterable[str],
    conversion_rates: Mapping[str, object] | None,
    base_currency: str,
) -> Dict[str, Decimal]:
    """Check that every foreign currency has a usable rate.

    Raises ConversionRateMissingError for the first currency (sorted) without
    a rate and InvalidRateError for a rate that is not strictly positive.
    """
    base = base_currency.upper()
    supplied = {str(k).upper(): v for k, v in (conversion_rates or {}).items()}
    rates: Dict[str, Decimal] = {base: Decimal("1")}
    for currency in sorted({c.upper() for c in currencies}):
        if currency == base:
            continue
        if supplied.get(currency) is None:
            raise ConversionRateMissingError(currency)
        rates[currency] = validate_rate(currency, supplied[currency])
    return rates


def convert_all(
    records: Iterable[ParsedRecord],
    rates: Mapping[str, Decimal],
    base_currency: str,
) -> List[TransactionDraft]:
    base = base_currency.upper()
    drafts = []
    for record in records:
        currency = (record.currency or base).upper()
        drafts.append(convert(record, rates.get(currency), base))
    return drafts
