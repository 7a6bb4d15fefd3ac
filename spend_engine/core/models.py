# spend_engine/core/models.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional


class Bank(str, Enum):
    CSOB = "CSOB"
    RAIFFEISEN = "Raiffeisen"
    REVOLUT = "Revolut"


@dataclass
class ParsedRecord:
    """Bank-agnostic row produced by a loader, before persistence."""
    date: date
    amount: Decimal
    description: str
    bank: str
    currency: Optional[str] = None
    source: Optional[str] = None


@dataclass
class RowParseWarning:
    """A malformed statement row that was skipped."""
    file: str
    row: int
    message: str

    def to_dict(self):
        return {"file": self.file, "row": self.row, "message": self.message}


@dataclass
class TransactionDraft:
    """Converted record, ready to be written to the transactions table."""
    date: date
    amount: Decimal
    description: str
    bank: str
    conversion_rate: Decimal = Decimal("1")
    original_amount: Optional[Decimal] = None
    original_currency: Optional[str] = None
    source: Optional[str] = None
    category_id: Optional[int] = None

    @property
    def statement_amount(self) -> Decimal:
        """Amount as printed on the statement, in the record's own currency."""
        if self.original_amount is not None:
            return self.original_amount
        return self.amount


@dataclass
class Transaction:
    id: int
    date: date
    amount: float
    description: str
    bank: str
    category_id: Optional[int] = None
    original_amount: Optional[float] = None
    original_currency: Optional[str] = None
    conversion_rate: float = 1.0
    created_at: Optional[str] = None
    category_name: Optional[str] = None
    category_color: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "amount": self.amount,
            "description": self.description,
            "bank": self.bank,
            "categoryId": self.category_id,
            "categoryName": self.category_name,
            "categoryColor": self.category_color,
            "originalAmount": self.original_amount,
            "originalCurrency": self.original_currency,
            "conversionRate": self.conversion_rate,
            "createdAt": self.created_at,
        }


@dataclass
class Category:
    id: int
    name: str
    color: str
    transaction_count: int = 0

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "transactionCount": self.transaction_count,
        }


@dataclass
class CategoryRule:
    id: int
    keyword: str
    category_id: int
    created_at: str
    category_name: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "keyword": self.keyword,
            "categoryId": self.category_id,
            "categoryName": self.category_name,
            "createdAt": self.created_at,
        }
