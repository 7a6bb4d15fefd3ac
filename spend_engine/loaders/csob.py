# spend_engine/loaders/csob.py

import io
import re
from datetime import date, datetime

import pandas as pd

from spend_engine.core.models import Bank, ParsedRecord, RowParseWarning
from spend_engine.loaders.base import (
    BaseLoader,
    collapse_whitespace,
    decode_text,
    is_blank,
    is_pdf,
    parse_czech_amount,
)

# DD.MM.<description><4-digit id><amount><balance>, e.g.
# 01.12.Transakce platební kartou 9613-1 462,0015 352,52
_TX_LINE = re.compile(r"^(\d{2})\.(\d{2})\.(.+?)(\d{4})(-?\d[\d\s]*,\d{2})(-?\d[\d\s]*,\d{2})$")
_TX_PREFIX = re.compile(r"^\d{2}\.\d{2}\.")
_PERIOD = re.compile(r"Období:\s*\d+\.\s*\d+\.\s*(\d{4})")
_MARKERS = ("csob", "čsob", "československá obchodní banka", "výpis z účtu")
_HEADER_PREFIXES = ("Datum", "Valuta")

_DATE_COLUMNS = ("datum zaúčtování", "datum provedení", "datum")
_DESC_COLUMNS = ("zpráva", "poznámka", "název protiúčtu", "označení operace")


class CsobLoader(BaseLoader):
    """
    Loader for CSOB account statements.

    PDF statements ("Přehled pohybů na účtu") carry one transaction per line:
      DD.MM. + description + 4-digit id + amount + running balance,
    with the year taken from the "Období:" header. A "Místo:" line shortly
    after a transaction names the merchant and replaces the description.

    CSV exports are semicolon separated with Czech headers:
      datum zaúčtování;částka;měna;...;zpráva;poznámka;...
    """
    bank = Bank.CSOB.value

    def parse(self, raw, filename=""):
        if is_blank(raw):
            return [], []
        if is_pdf(raw):
            return self.parse_pdf_lines(self.read_pdf_lines(raw, filename), filename)
        return self.parse_csv(decode_text(raw), filename)

    # -- PDF -----------------------------------------------------------------

    def parse_pdf_lines(self, lines, filename=""):
        text = "\n".join(lines)
        period = _PERIOD.search(text)
        year = int(period.group(1)) if period else date.today().year

        records, warnings = [], []
        for i, line in enumerate(lines):
            if self._is_header(line):
                continue
            m = _TX_LINE.match(line)
            if not m:
                if _TX_PREFIX.match(line) and "," in line:
                    warnings.append(RowParseWarning(filename, i + 1, f"Unrecognized transaction line: {line}"))
                continue

            day, month, desc, _tx_id, amt_raw, _balance = m.groups()
            try:
                d = date(year, int(month), int(day))
                amount = parse_czech_amount(amt_raw)
            except ValueError as e:
                warnings.append(RowParseWarning(filename, i + 1, str(e)))
                continue
            if amount == 0:
                continue

            for nxt in lines[i + 1:i + 6]:
                if nxt.startswith("Místo:"):
                    desc = nxt[len("Místo:"):]
                    break
                if _TX_PREFIX.match(nxt):
                    break

            records.append(ParsedRecord(
                date=d,
                amount=amount,
                description=collapse_whitespace(desc),
                bank=self.bank,
                currency=self.base_currency,
            ))

        if not records and not any(mk in text.lower() for mk in _MARKERS):
            raise self.unrecognized(filename, "no CSOB statement markers or transactions found")
        if records and not period:
            # Row 0 marks a warning about the whole file.
            warnings.insert(0, RowParseWarning(
                filename, 0, f"No 'Období' period header; dates assume year {year}"
            ))
        return records, warnings

    @staticmethod
    def _is_header(line):
        return (
            line.startswith(_HEADER_PREFIXES)
            or line == "Označení platby"
            or "Vážená klientko" in line
            or "Víte, že si u nás" in line
            or "Identifikace" in line
            or ("Částka" in line and "Zůstatek" in line)
        )

    # -- CSV -----------------------------------------------------------------

    def parse_csv(self, text, filename=""):
        # 1. Detect header row
        header_row = None
        for idx, line in enumerate(text.splitlines()):
            low = line.lower()
            if ";" in low and "datum" in low and "částka" in low:
                header_row = idx
                break
        if header_row is None:
            raise self.unrecognized(filename, "header with 'datum' and 'částka' columns not found")

        # 2. Read with that header
        df = pd.read_csv(
            io.StringIO(text),
            sep=";",
            skiprows=header_row,
            header=0,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
        )

        # 3. Column lookup
        cols = {str(c).strip().lower(): c for c in df.columns}

        def find(*frags):
            for frag in frags:
                if frag in cols:
                    return cols[frag]
            for frag in frags:
                hit = next((orig for low, orig in cols.items() if frag in low), None)
                if hit is not None:
                    return hit
            return None

        date_col = find(*_DATE_COLUMNS)
        amt_col = find("částka")
        cur_col = find("měna")
        desc_cols = [c for c in (find(frag) for frag in _DESC_COLUMNS) if c is not None]
        if date_col is None or amt_col is None:
            raise self.unrecognized(filename, f"missing date or amount column; found {list(df.columns)}")

        # 4. Parse rows, collecting warnings instead of aborting
        records, warnings = [], []
        for idx, row in df.iterrows():
            line_no = header_row + int(idx) + 2
            d_raw = str(row[date_col]).strip()
            amt_raw = str(row[amt_col]).strip()
            if not d_raw and not amt_raw:
                continue
            try:
                d = datetime.strptime(d_raw, "%d.%m.%Y").date()
            except ValueError:
                warnings.append(RowParseWarning(filename, line_no, f"Could not parse date '{d_raw}'"))
                continue
            if not amt_raw:
                warnings.append(RowParseWarning(filename, line_no, "Missing amount"))
                continue
            try:
                amount = parse_czech_amount(amt_raw)
            except ValueError as e:
                warnings.append(RowParseWarning(filename, line_no, str(e)))
                continue
            if amount == 0:
                continue

            desc = next((str(row[c]).strip() for c in desc_cols if str(row[c]).strip()), "")
            if not desc:
                warnings.append(RowParseWarning(filename, line_no, "Missing description"))
                continue

            currency = str(row[cur_col]).strip().upper() if cur_col is not None else ""
            records.append(ParsedRecord(
                date=d,
                amount=amount,
                description=collapse_whitespace(desc),
                bank=self.bank,
                currency=currency or self.base_currency,
            ))
        return records, warnings
