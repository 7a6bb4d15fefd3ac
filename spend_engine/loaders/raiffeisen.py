# spend_engine/loaders/raiffeisen.py

import re
from datetime import date

from spend_engine.core.models import Bank, ParsedRecord, RowParseWarning
from spend_engine.loaders.base import (
    BaseLoader,
    collapse_whitespace,
    is_blank,
    is_pdf,
    parse_czech_amount,
)

_DATE_LINE = re.compile(r"^(\d{1,2})\.\s*(\d{1,2})\.\s*(\d{4})$")
_AMOUNT_TAIL = re.compile(r"(-?\d{1,3}(?:\s\d{3})*[.,]\d{2})\s*CZK$")
_PERIOD = re.compile(r"za období:.*?(\d{4})")
_FOOTER = re.compile(r"^K\d{7}\s+v\d+\.\d+")
_MARKERS = ("raiffeisenbank", "raiffeisen", "rzbcczpp")

_SKIP_PATTERNS = [
    re.compile(p) for p in (
        r"^\d+$",
        r"^KS:\d+$",
        r"^VS:\d+$",
        r"^SS:\d+$",
        r"^PK:\s*\d+",
        r"^Platba$",
        r"^Platba kartou$",
        r"^Úrok$",
        r"^Poplatek$",
        r"^\d+-?\d*/\d{4}$",
        r"^[A-Z]{2}\d{2}",
    )
]
_TRANSACTION_TYPES = (
    "Platba na internetu Apple Pay",
    "Příchozí úhrada",
    "Jednorázová úhrada",
    "Příchozí okamžitá úhrada",
    "Odchozí okamžitá úhrada",
    "Platba kartou",
    "Splátka úvěru",
    "Úrok z úvěru",
    "Vedení účtu",
)
_CATEGORY_PREFIXES = ("Platba", "Úrok", "Poplatek")
_UPPER_START = re.compile(r"^[A-ZÁČĎÉĚÍŇÓŘŠŤÚŮÝŽ]")


class RaiffeisenLoader(BaseLoader):
    """
    Loader for Raiffeisenbank PDF statements ("Výpis pohybů").

    Each transaction is a block of lines that starts with the posting date
    (D. M. YYYY), optionally followed by the valuta date, and ends with the
    amount line ("-1 234,56 CZK"). Lines in between hold codes, account
    numbers, payee and merchant names.
    """
    bank = Bank.RAIFFEISEN.value

    def parse(self, raw, filename=""):
        if is_blank(raw):
            return [], []
        if not is_pdf(raw):
            raise self.unrecognized(filename, "only PDF statements are supported")
        return self.parse_pdf_lines(self.read_pdf_lines(raw, filename), filename)

    def parse_pdf_lines(self, lines, filename=""):
        text = "\n".join(lines)
        if not _PERIOD.search(text) and not any(mk in text.lower() for mk in _MARKERS):
            raise self.unrecognized(filename, "no Raiffeisen statement markers found")

        records, warnings = [], []
        i = 0
        while i < len(lines):
            m = _DATE_LINE.match(lines[i])
            if not m:
                i += 1
                continue

            start = i
            block, amount = [], None
            j = i + 1
            if j < len(lines) and _DATE_LINE.match(lines[j]):
                j += 1  # valuta date

            while j < len(lines):
                nxt = lines[j]
                am = _AMOUNT_TAIL.search(nxt)
                if am:
                    amount = parse_czech_amount(am.group(1))
                    before = nxt[:am.start()].strip()
                    if before and not before.isdigit():
                        block.append(before)
                    break
                if _DATE_LINE.match(nxt):
                    break
                if "Raiffeisenbank a.s." in nxt or "Strana /" in nxt or _FOOTER.match(nxt):
                    j += 1
                    continue
                block.append(nxt)
                j += 1

            day, month, year = (int(g) for g in m.groups())
            if amount is None:
                warnings.append(RowParseWarning(filename, start + 1, f"No amount found for transaction dated {lines[start]}"))
                i = j
                continue
            try:
                d = date(year, month, day)
            except ValueError as e:
                warnings.append(RowParseWarning(filename, start + 1, f"Invalid date '{lines[start]}': {e}"))
                i = j
                continue

            if amount != 0:
                records.append(ParsedRecord(
                    date=d,
                    amount=amount,
                    description=self.extract_description(block),
                    bank=self.bank,
                    currency=self.base_currency,
                ))
            i = j
        return records, warnings

    def extract_description(self, lines):
        # Merchant lines look like "NAME; CITY; COUNTRY"
        for line in lines:
            if ";" in line and not line.startswith("PK:"):
                return line.split(";")[0].strip()

        meaningful, types = [], []
        for line in lines:
            if any(p.search(line) for p in _SKIP_PATTERNS) or len(line) < 3:
                continue
            if _DATE_LINE.match(line):
                continue
            if any(t in line for t in _TRANSACTION_TYPES):
                types.append(line)
                continue
            meaningful.append(line)

        for line in meaningful:
            if re.search(r"IC\s*\d+", line) or re.match(r"^\d+-?\d*$", line):
                continue
            return self.clean_description(line)
        if types:
            return self.clean_description(types[0])
        if meaningful:
            return self.clean_description(meaningful[0])
        return "Unknown transaction"

    @staticmethod
    def clean_description(description):
        cleaned = collapse_whitespace(description)
        cleaned = re.sub(r"^KS:\d+\s*", "", cleaned)
        cleaned = re.sub(r"^VS:\d+\s*", "", cleaned).strip()
        # PDF extraction glues the category onto the type: "PlatbaSplátka úvěru"
        for prefix in _CATEGORY_PREFIXES:
            rest = cleaned[len(prefix):]
            if cleaned.startswith(prefix) and rest and _UPPER_START.match(rest):
                return rest
        return cleaned
