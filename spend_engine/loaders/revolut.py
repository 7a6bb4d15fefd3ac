# spend_engine/loaders/revolut.py

import csv
import io
import re
from datetime import datetime

import pandas as pd

from spend_engine.core.models import Bank, ParsedRecord, RowParseWarning
from spend_engine.loaders.base import (
    BaseLoader,
    collapse_whitespace,
    decode_text,
    is_blank,
    parse_locale_amount,
)

_ZIP_MAGIC = b"PK\x03\x04"
_ISO_DATE = re.compile(r"^(\d{4}-\d{2}-\d{2})")

# Revolut localizes the export headers; map each language onto our fields.
HEADER_MAPPINGS = {
    "spanish": {
        "type": "tipo",
        "start_date": "fecha de inicio",
        "description": "descripción",
        "amount": "importe",
        "fee": "comisión",
        "currency": "divisa",
    },
    "english": {
        "type": "type",
        "start_date": "started date",
        "description": "description",
        "amount": "amount",
        "fee": "fee",
        "currency": "currency",
    },
}
_REQUIRED = ("type", "start_date", "description", "amount")


class RevolutLoader(BaseLoader):
    """
    Loader for Revolut account statements (CSV, or XLSX saved from it).

    English headers:
      Type,Product,Started Date,Completed Date,Description,Amount,Fee,Currency,State,Balance
    Spanish headers:
      Tipo,Producto,Fecha de inicio,Fecha de finalización,Descripción,Importe,Comisión,Divisa,State,Saldo

    A non-zero fee is emitted as its own expense row ("Fee: <description>").
    """
    bank = Bank.REVOLUT.value

    def parse(self, raw, filename=""):
        if is_blank(raw):
            return [], []
        if raw[:4] == _ZIP_MAGIC:
            rows = self._xlsx_rows(raw, filename)
        else:
            rows = [row for row in csv.reader(io.StringIO(decode_text(raw)))]
        return self.parse_rows(rows, filename)

    def _xlsx_rows(self, raw, filename):
        try:
            df = pd.read_excel(io.BytesIO(raw), header=None, dtype=str, engine="openpyxl")
        except Exception as exc:  # openpyxl raises on anything that isn't a workbook
            raise self.unrecognized(filename, f"unreadable spreadsheet ({exc})") from exc
        df = df.fillna("")
        return [[str(v) for v in row] for row in df.itertuples(index=False)]

    @staticmethod
    def detect_mapping(headers):
        lowered = [str(h).strip().lower() for h in headers]
        for mapping in HEADER_MAPPINGS.values():
            idx = {field: (lowered.index(name) if name in lowered else -1)
                   for field, name in mapping.items()}
            if all(idx[f] != -1 for f in _REQUIRED):
                return idx
        return None

    def parse_rows(self, rows, filename=""):
        rows = [r for r in rows if any(str(c).strip() for c in r)]
        if not rows:
            return [], []
        mapping = self.detect_mapping(rows[0])
        if mapping is None:
            raise self.unrecognized(
                filename,
                "expected Revolut headers (Type, Started Date, Description, Amount "
                "or Tipo, Fecha de inicio, Descripción, Importe)",
            )

        def field(row, name, default=""):
            pos = mapping[name]
            if pos == -1 or pos >= len(row):
                return default
            return str(row[pos]).strip()

        records, warnings = [], []
        for line_no, row in enumerate(rows[1:], start=2):
            started = field(row, "start_date")
            desc = collapse_whitespace(field(row, "description"))
            if not started or not desc:
                warnings.append(RowParseWarning(filename, line_no, "Missing date or description"))
                continue

            m = _ISO_DATE.match(started)
            try:
                d = datetime.strptime(m.group(1) if m else started[:10], "%Y-%m-%d").date()
                amount = parse_locale_amount(field(row, "amount", "0"))
                fee = parse_locale_amount(field(row, "fee", "0"))
            except ValueError as e:
                warnings.append(RowParseWarning(filename, line_no, str(e)))
                continue

            currency = field(row, "currency").upper() or self.base_currency
            if amount != 0:
                records.append(ParsedRecord(
                    date=d,
                    amount=amount,
                    description=desc,
                    bank=self.bank,
                    currency=currency,
                ))
            if fee != 0:
                records.append(ParsedRecord(
                    date=d,
                    amount=-abs(fee),
                    description=f"Fee: {desc}",
                    bank=self.bank,
                    currency=currency,
                ))
        return records, warnings
