# spend_engine/importer.py
"""Two-phase statement import: parse into a session, then commit it."""
from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from spend_engine.currency import convert_all, resolve_rates
from spend_engine.database import commit_drafts
from spend_engine.loaders import get_loader, resolve_bank
from spend_engine.sessions import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class UploadedFile:
    filename: str
    content: bytes
    bank: str


@dataclass
class ParseResult:
    session_id: str
    parsed: int
    currencies: List[str]
    by_bank: Dict[str, int]
    by_currency: Dict[str, int]
    warnings: list = field(default_factory=list)

    def to_dict(self):
        return {
            "sessionId": self.session_id,
            "parsed": self.parsed,
            "currencies": list(self.currencies),
            "byBank": dict(self.by_bank),
            "byCurrency": dict(self.by_currency),
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class ImportResult:
    imported: int
    duplicates: int
    by_bank: Dict[str, int]

    def to_dict(self):
        return {"imported": self.imported, "duplicates": self.duplicates, "byBank": dict(self.by_bank)}


class ImportService:
    """Owns the session store and ties loaders, conversion and persistence together."""

    def __init__(
        self,
        db_path: str,
        base_currency: str = "CZK",
        session_ttl_seconds: float = 900,
        parse_workers: int = 4,
        store: Optional[SessionStore] = None,
    ):
        self.db_path = db_path
        self.base_currency = base_currency.upper()
        self.parse_workers = max(1, int(parse_workers))
        self.store = store or SessionStore(session_ttl_seconds)

    @classmethod
    def from_config(cls, cfg: dict, db_path: Optional[str] = None) -> "ImportService":
        return cls(
            db_path or cfg["db_path"],
            base_currency=cfg.get("base_currency", "CZK"),
            session_ttl_seconds=cfg.get("session_ttl_seconds", 900),
            parse_workers=cfg.get("parse_workers", 4),
        )

    def _parse_one(self, upload: UploadedFile):
        loader = get_loader(upload.bank, self.base_currency)
        records, warnings = loader.parse(upload.content, upload.filename)
        for record in records:
            record.source = upload.filename
        logger.debug("Parsed %d record(s) from %s (%s)", len(records), upload.filename, loader.bank)
        return records, warnings

    def parse_files(self, files: Sequence[UploadedFile]) -> ParseResult:
        """
        Run every file through its bank loader and park the combined batch
        in a new session. Nothing is written to the database here.
        """
        # Fail fast on an unknown bank before any parsing work starts.
        files = [UploadedFile(f.filename, f.content, resolve_bank(f.bank)) for f in files]

        if len(files) > 1 and self.parse_workers > 1:
            with ThreadPoolExecutor(max_workers=min(self.parse_workers, len(files))) as pool:
                results = list(pool.map(self._parse_one, files))
        else:
            results = [self._parse_one(f) for f in files]

        records, warnings = [], []
        for recs, warns in results:
            records.extend(recs)
            warnings.extend(warns)

        by_bank = Counter(r.bank for r in records)
        by_currency = Counter((r.currency or self.base_currency).upper() for r in records)
        currencies = sorted(by_currency)

        session = self.store.create(
            records,
            currencies,
            dict(by_bank),
            dict(by_currency),
            files=[f.filename for f in files],
        )
        logger.info(
            "Parsed %d record(s) from %d file(s) into session %s (%d warning(s))",
            len(records), len(files), session.session_id, len(warnings),
        )
        return ParseResult(
            session_id=session.session_id,
            parsed=len(records),
            currencies=currencies,
            by_bank=dict(by_bank),
            by_currency=dict(by_currency),
            warnings=warnings,
        )

    def complete_import(
        self,
        session_id: str,
        conversion_rates: Optional[Mapping[str, object]] = None,
    ) -> ImportResult:
        """
        Convert, dedupe and persist a parsed session.
        The session survives any failure so the call can be retried with
        corrected rates until it expires.
        """
        session = self.store.get(session_id)
        rates = resolve_rates(session.currencies, conversion_rates, self.base_currency)
        drafts = convert_all(session.records, rates, self.base_currency)
        survivors, duplicates = commit_drafts(self.db_path, drafts, self.base_currency)
        self.store.discard(session_id)

        by_bank = dict(Counter(d.bank for d in survivors))
        logger.info(
            "Session %s committed: %d imported, %d duplicate(s)",
            session_id, len(survivors), duplicates,
        )
        return ImportResult(imported=len(survivors), duplicates=duplicates, by_bank=by_bank)

    def import_files(
        self,
        files: Sequence[UploadedFile],
        conversion_rates: Optional[Mapping[str, object]] = None,
    ) -> ImportResult:
        parsed = self.parse_files(files)
        return self.complete_import(parsed.session_id, conversion_rates)
