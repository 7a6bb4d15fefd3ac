# spend_engine/errors.py
"""Exceptions raised by the import, categorization and stats engine.

Every exception carries a human readable message plus a ``details`` dict with
the identifiers a caller needs to act on it (file name, currency, rule id,
session id). Row-level parse problems are not exceptions; see
:class:`spend_engine.core.models.RowParseWarning`.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class SpendEngineError(Exception):
    """Base class for all engine errors."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class UnrecognizedFormatError(SpendEngineError):
    """The file cannot be read as the designated bank's statement format."""

    code = "UNRECOGNIZED_FORMAT"

    def __init__(self, message: str, file: Optional[str] = None, bank: Optional[str] = None):
        super().__init__(message, {"file": file, "bank": bank})
        self.file = file
        self.bank = bank


class SessionExpiredError(SpendEngineError):
    code = "SESSION_EXPIRED"

    def __init__(self, session_id: str):
        super().__init__(
            f"Import session '{session_id}' does not exist or has expired. "
            "Upload the files again.",
            {"session_id": session_id},
        )
        self.session_id = session_id


class ConversionRateMissingError(SpendEngineError):
    code = "CONVERSION_RATE_MISSING"

    def __init__(self, currency: str):
        super().__init__(
            f"Missing conversion rate for currency {currency}",
            {"currency": currency},
        )
        self.currency = currency


class InvalidRateError(SpendEngineError):
    code = "INVALID_RATE"

    def __init__(self, currency: str, rate: Any):
        super().__init__(
            f"Conversion rate for {currency} must be a positive number, got {rate!r}",
            {"currency": currency, "rate": rate},
        )
        self.currency = currency
        self.rate = rate


class NotFoundError(SpendEngineError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} {resource_id} not found",
            {"resource": resource, "id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(SpendEngineError):
    code = "VALIDATION_ERROR"


class ConflictError(SpendEngineError):
    code = "CONFLICT"


class PersistenceError(SpendEngineError):
    """Storage failure; the surrounding batch has been rolled back."""

    code = "PERSISTENCE_ERROR"


class ExchangeRateError(SpendEngineError):
    code = "EXCHANGE_RATE_UNAVAILABLE"
