from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from datetime import date
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse

from spend_engine.database import (
    create_category,
    delete_category,
    fetch_transactions,
    list_categories,
    list_uploads,
    update_category,
)
from spend_engine.errors import (
    ConflictError,
    ConversionRateMissingError,
    ExchangeRateError,
    InvalidRateError,
    NotFoundError,
    SessionExpiredError,
    SpendEngineError,
    UnrecognizedFormatError,
    ValidationError,
)
from spend_engine.exchange import ExchangeRateClient, client_from_config
from spend_engine.importer import ImportService, UploadedFile
from spend_engine.rules import (
    apply_rules,
    create_rule,
    delete_rule,
    list_rules,
    set_transaction_category,
    update_rule,
)
from spend_engine.stats import get_stats

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (SessionExpiredError, 410),
    (NotFoundError, 404),
    (ConflictError, 409),
    (UnrecognizedFormatError, 422),
    (ConversionRateMissingError, 400),
    (InvalidRateError, 400),
    (ValidationError, 400),
    (ExchangeRateError, 500),
)

_CATEGORY_PATH = re.compile(r"^/api/categories/(\d+)$")
_RULE_PATH = re.compile(r"^/api/rules/(\d+)$")
_TX_PATH = re.compile(r"^/api/transactions/(\d+)$")


def _status_for(exc: SpendEngineError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


def _parse_date(value: str | None, name: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO date (YYYY-MM-DD)", {name: value})


def _parse_int(value: Any, name: str, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", {name: value})


def _get_param(query: dict[str, list[str]], key: str) -> str | None:
    values = query.get(key)
    return values[0] if values else None


def _json_response(handler: BaseHTTPRequestHandler, payload: Any, status: int = 200) -> None:
    body = json.dumps(payload).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    handler.send_header("Cache-Control", "no-store")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _error_response(handler: BaseHTTPRequestHandler, exc: SpendEngineError) -> None:
    _json_response(handler, {"error": exc.to_dict()}, status=_status_for(exc))


class SpendboardHandler(BaseHTTPRequestHandler):
    db_path = "data/spending.db"
    service: ImportService | None = None
    rates: ExchangeRateClient | None = None
    base_currency = "CZK"
    apply_chunk_size = 500
    max_file_bytes = 5 * 1024 * 1024
    max_files = 10

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    # -- plumbing -------------------------------------------------------------

    def _dispatch(self, routes: dict[str, Callable], patterns=()) -> None:
        parsed = urlparse(self.path)
        try:
            handler = routes.get(parsed.path)
            if handler is not None:
                handler(parse_qs(parsed.query))
                return
            for pattern, fn in patterns:
                match = pattern.match(parsed.path)
                if match:
                    fn(int(match.group(1)))
                    return
        except SpendEngineError as exc:
            _error_response(self, exc)
            return
        except Exception:
            logger.exception("Unhandled error serving %s %s", self.command, parsed.path)
            _json_response(
                self,
                {"error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}}},
                status=500,
            )
            return
        _json_response(
            self,
            {"error": {"code": "NOT_FOUND", "message": "not found", "details": {"path": parsed.path}}},
            status=404,
        )

    def _read_json(self) -> dict:
        length = _parse_int(self.headers.get("Content-Length"), "Content-Length", default=0)
        # base64 inflates uploads by a third; leave room for the JSON envelope.
        limit = self.max_file_bytes * self.max_files * 4 // 3 + 64 * 1024
        if length > limit:
            raise ValidationError("Request body too large", {"limit": limit})
        raw = self.rfile.read(length) if length else b""
        if not raw:
            return {}
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Request body is not valid JSON: {exc}")
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload

    # -- verbs ----------------------------------------------------------------

    def do_GET(self) -> None:
        self._dispatch(
            {
                "/api/rules": lambda q: _json_response(self, [r.to_dict() for r in list_rules(self.db_path)]),
                "/api/categories": lambda q: _json_response(
                    self, [c.to_dict() for c in list_categories(self.db_path)]
                ),
                "/api/transactions": self._get_transactions,
                "/api/transactions/stats": self._get_stats,
                "/api/exchange-rate": self._get_exchange_rate,
                "/api/upload/history": lambda q: _json_response(
                    self, list_uploads(self.db_path, _parse_int(_get_param(q, "limit"), "limit", default=50))
                ),
            }
        )

    def do_POST(self) -> None:
        self._dispatch(
            {
                "/api/upload/parse": self._post_parse,
                "/api/upload/complete": self._post_complete,
                "/api/categories": self._post_category,
                "/api/rules": self._post_rule,
                "/api/rules/apply": lambda q: _json_response(
                    self, apply_rules(self.db_path, self.apply_chunk_size)
                ),
                "/api/exchange-rate/batch": self._post_exchange_batch,
            }
        )

    def do_PATCH(self) -> None:
        self._dispatch(
            {},
            (
                (_CATEGORY_PATH, self._patch_category),
                (_RULE_PATH, self._patch_rule),
                (_TX_PATH, self._patch_transaction),
            ),
        )

    def do_DELETE(self) -> None:
        self._dispatch({}, ((_CATEGORY_PATH, self._delete_category), (_RULE_PATH, self._delete_rule)))

    # -- import ---------------------------------------------------------------

    def _post_parse(self, query) -> None:
        payload = self._read_json()
        entries = payload.get("files")
        if not isinstance(entries, list) or not entries:
            raise ValidationError("files must be a non-empty list")
        if len(entries) > self.max_files:
            raise ValidationError(
                f"At most {self.max_files} files per upload", {"files": len(entries)}
            )
        uploads = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise ValidationError("Each file must be an object")
            filename = str(entry.get("filename") or "upload")
            if not entry.get("bank"):
                raise ValidationError("bank is required", {"file": filename})
            try:
                content = base64.b64decode(entry.get("content_base64") or "", validate=True)
            except (binascii.Error, ValueError):
                raise ValidationError("content_base64 is not valid base64", {"file": filename})
            if len(content) > self.max_file_bytes:
                raise ValidationError(
                    f"{filename} exceeds {self.max_file_bytes} bytes", {"file": filename}
                )
            uploads.append(UploadedFile(filename, content, str(entry["bank"])))
        _json_response(self, self.service.parse_files(uploads).to_dict())

    def _post_complete(self, query) -> None:
        payload = self._read_json()
        session_id = payload.get("sessionId")
        if not session_id:
            raise ValidationError("sessionId is required")
        rates = payload.get("conversionRates") or {}
        if not isinstance(rates, dict):
            raise ValidationError("conversionRates must be an object")
        _json_response(self, self.service.complete_import(str(session_id), rates).to_dict())

    # -- categories -----------------------------------------------------------

    def _post_category(self, query) -> None:
        payload = self._read_json()
        category = create_category(self.db_path, payload.get("name"), payload.get("color"))
        _json_response(self, category.to_dict(), status=201)

    def _patch_category(self, category_id: int) -> None:
        payload = self._read_json()
        category = update_category(
            self.db_path, category_id, name=payload.get("name"), color=payload.get("color")
        )
        _json_response(self, category.to_dict())

    def _delete_category(self, category_id: int) -> None:
        delete_category(self.db_path, category_id)
        _json_response(self, {"deleted": category_id})

    # -- rules ----------------------------------------------------------------

    def _post_rule(self, query) -> None:
        payload = self._read_json()
        category_id = _parse_int(payload.get("categoryId"), "categoryId")
        if category_id is None:
            raise ValidationError("categoryId is required")
        rule = create_rule(self.db_path, payload.get("keyword"), category_id)
        _json_response(self, rule.to_dict(), status=201)

    def _patch_rule(self, rule_id: int) -> None:
        payload = self._read_json()
        rule = update_rule(
            self.db_path,
            rule_id,
            keyword=payload.get("keyword"),
            category_id=_parse_int(payload.get("categoryId"), "categoryId"),
        )
        _json_response(self, rule.to_dict())

    def _delete_rule(self, rule_id: int) -> None:
        delete_rule(self.db_path, rule_id)
        _json_response(self, {"deleted": rule_id})

    # -- transactions ---------------------------------------------------------

    def _get_transactions(self, query) -> None:
        txs = fetch_transactions(
            self.db_path,
            start_date=_parse_date(_get_param(query, "startDate"), "startDate"),
            end_date=_parse_date(_get_param(query, "endDate"), "endDate"),
            bank=_get_param(query, "bank"),
            category_id=_parse_int(_get_param(query, "categoryId"), "categoryId"),
            uncategorized=_get_param(query, "uncategorized") in ("1", "true"),
            search=_get_param(query, "search"),
            limit=_parse_int(_get_param(query, "limit"), "limit", default=200),
            offset=_parse_int(_get_param(query, "offset"), "offset", default=0),
        )
        _json_response(self, [t.to_dict() for t in txs])

    def _patch_transaction(self, tx_id: int) -> None:
        payload = self._read_json()
        if "categoryId" not in payload:
            raise ValidationError("categoryId is required (null clears it)")
        tx = set_transaction_category(
            self.db_path,
            tx_id,
            _parse_int(payload.get("categoryId"), "categoryId"),
            learn=bool(payload.get("learn", True)),
        )
        _json_response(self, tx.to_dict())

    def _get_stats(self, query) -> None:
        stats = get_stats(
            self.db_path,
            start_date=_parse_date(_get_param(query, "startDate"), "startDate"),
            end_date=_parse_date(_get_param(query, "endDate"), "endDate"),
            base_currency=self.base_currency,
        )
        _json_response(self, stats)

    # -- exchange rates -------------------------------------------------------

    def _get_exchange_rate(self, query) -> None:
        source = _get_param(query, "from")
        if not source:
            raise ValidationError("from is required")
        target = _get_param(query, "to") or self.base_currency
        rate = self.rates.get_rate(source, target)
        _json_response(self, {"from": source.upper(), "to": target.upper(), "rate": rate})

    def _post_exchange_batch(self, query) -> None:
        payload = self._read_json()
        currencies = payload.get("currencies")
        if not isinstance(currencies, list):
            raise ValidationError("currencies must be a list")
        target = payload.get("to") or self.base_currency
        _json_response(self, {"to": target.upper(), "rates": self.rates.get_rates(currencies, target)})


def make_server(cfg: dict, db_path: str | None = None, host: str = "127.0.0.1", port: int = 8000):
    """Build (but do not start) a threaded API server bound to *host*:*port*."""
    upload = cfg.get("upload", {}) or {}
    db_path = db_path or cfg["db_path"]
    handler = type(
        "SpendboardHandler",
        (SpendboardHandler,),
        {
            "db_path": db_path,
            "service": ImportService.from_config(cfg, db_path),
            "rates": client_from_config(cfg),
            "base_currency": cfg.get("base_currency", "CZK"),
            "apply_chunk_size": int(cfg.get("apply_chunk_size", 500)),
            "max_file_bytes": int(upload.get("max_file_bytes", 5 * 1024 * 1024)),
            "max_files": int(upload.get("max_files", 10)),
        },
    )
    return ThreadingHTTPServer((host, port), handler)
