# spend_engine/loaders/base.py
import io
import re
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation

import pdfplumber

from spend_engine.errors import UnrecognizedFormatError

_PDF_MAGIC = b"%PDF-"
_SPACES = re.compile(r"\s+")


class BaseLoader(ABC):
    bank = None

    def __init__(self, base_currency="CZK"):
        self.base_currency = base_currency.upper()

    @abstractmethod
    def parse(self, raw: bytes, filename: str = ""):
        """
        Turn raw statement bytes into (records, warnings).
        Malformed rows become RowParseWarning entries; a file that is not in
        this bank's format raises UnrecognizedFormatError.
        """
        pass

    def unrecognized(self, filename, reason):
        return UnrecognizedFormatError(
            f"{filename or 'file'} is not a recognized {self.bank} statement: {reason}",
            file=filename,
            bank=self.bank,
        )

    def read_pdf_lines(self, raw, filename):
        try:
            return pdf_lines(raw)
        except Exception as exc:  # pdfminer raises a variety of syntax errors
            raise self.unrecognized(filename, f"unreadable PDF ({exc})") from exc


def is_pdf(raw):
    return raw[:5] == _PDF_MAGIC


def is_blank(raw):
    return not raw or not raw.strip()


def pdf_lines(raw):
    """Extract non-empty, stripped text lines from every page of a PDF."""
    lines = []
    with pdfplumber.open(io.BytesIO(raw)) as pdf:
        for page in pdf.pages:
            text = page.extract_text() or ""
            lines.extend(ln.strip() for ln in text.split("\n") if ln.strip())
    return lines


def decode_text(raw, encodings=("utf-8-sig", "cp1250")):
    for enc in encodings:
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("latin-1")


def parse_czech_amount(text):
    """Parse '-1 462,00' or '33 500,00' style amounts."""
    cleaned = _SPACES.sub("", str(text)).replace(",", ".")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Could not parse amount '{text}'")


def parse_locale_amount(text):
    """
    Parse an amount in either European (1.234,56) or US (1,234.56) notation;
    whichever separator comes last is the decimal point.
    """
    cleaned = _SPACES.sub("", str(text))
    if not cleaned:
        return Decimal("0")
    if cleaned.rfind(",") > cleaned.rfind("."):
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Could not parse amount '{text}'")


def collapse_whitespace(text):
    return _SPACES.sub(" ", str(text)).strip()
