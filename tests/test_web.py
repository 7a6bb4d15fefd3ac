import base64
import json
import threading
import urllib.error
import urllib.request

import pytest

from spend_engine.config import load_config
from spend_engine.web import make_server

CSOB = (
    "datum zaúčtování;částka;měna;zpráva\n"
    "01.03.2025;-1 462,00;CZK;TESCO EXPRESS PRAHA\n"
    "02.03.2025;25 000,00;CZK;VYPLATA\n"
).encode("utf-8")
REVOLUT = (
    "Type,Started Date,Description,Amount,Fee,Currency\n"
    "CARD_PAYMENT,2025-03-05 10:00:00,Lidl Berlin,-10.00,0.50,EUR\n"
).encode("utf-8")


@pytest.fixture
def api(tmp_path):
    cfg = load_config(tmp_path / "missing.yaml")
    cfg["upload"]["max_file_bytes"] = 4096
    cfg["upload"]["max_files"] = 2
    server = make_server(cfg, str(tmp_path / "spend.db"), port=0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    base = f"http://127.0.0.1:{server.server_address[1]}"

    def call(method, path, body=None):
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(base + path, data=data, method=method)
        req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                return resp.status, json.loads(resp.read())
        except urllib.error.HTTPError as err:
            return err.code, json.loads(err.read())

    yield call
    server.shutdown()
    server.server_close()


def _upload(name, bank, content):
    return {"filename": name, "bank": bank, "content_base64": base64.b64encode(content).decode("ascii")}


def test_two_phase_upload(api):
    status, parsed = api("POST", "/api/upload/parse", {
        "files": [_upload("csob.csv", "CSOB", CSOB), _upload("rev.csv", "Revolut", REVOLUT)]
    })
    assert status == 200
    assert parsed["parsed"] == 4
    assert parsed["currencies"] == ["CZK", "EUR"]
    assert parsed["byBank"] == {"CSOB": 2, "Revolut": 2}
    assert parsed["warnings"] == []

    status, err = api("POST", "/api/upload/complete", {"sessionId": parsed["sessionId"], "conversionRates": {}})
    assert status == 400
    assert err["error"]["code"] == "CONVERSION_RATE_MISSING"
    assert err["error"]["details"] == {"currency": "EUR"}

    status, err = api("POST", "/api/upload/complete", {
        "sessionId": parsed["sessionId"], "conversionRates": {"EUR": -1}
    })
    assert (status, err["error"]["code"]) == (400, "INVALID_RATE")

    status, result = api("POST", "/api/upload/complete", {
        "sessionId": parsed["sessionId"], "conversionRates": {"EUR": 25}
    })
    assert status == 200
    assert result == {"imported": 4, "duplicates": 0, "byBank": {"CSOB": 2, "Revolut": 2}}

    status, err = api("POST", "/api/upload/complete", {"sessionId": parsed["sessionId"], "conversionRates": {}})
    assert (status, err["error"]["code"]) == (410, "SESSION_EXPIRED")

    status, txs = api("GET", "/api/transactions?bank=Revolut")
    assert {t["description"]: t["amount"] for t in txs} == {"Lidl Berlin": -250.0, "Fee: Lidl Berlin": -12.5}
    assert txs[0]["originalCurrency"] == "EUR"

    status, history = api("GET", "/api/upload/history")
    assert status == 200
    assert sorted((h["filename"], h["transactionCount"]) for h in history) == [("csob.csv", 2), ("rev.csv", 2)]


def test_upload_validation(api):
    status, err = api("POST", "/api/upload/parse", {"files": [_upload("x.csv", "Fio", CSOB)]})
    assert (status, err["error"]["code"]) == (422, "UNRECOGNIZED_FORMAT")

    status, err = api("POST", "/api/upload/parse", {"files": [_upload("r.csv", "Revolut", CSOB)]})
    assert status == 422
    assert err["error"]["details"] == {"file": "r.csv", "bank": "Revolut"}

    status, err = api("POST", "/api/upload/parse", {"files": [_upload("a.csv", "CSOB", CSOB)] * 3})
    assert (status, err["error"]["code"]) == (400, "VALIDATION_ERROR")

    status, _ = api("POST", "/api/upload/parse", {"files": [_upload("big.csv", "CSOB", b"x" * 5000)]})
    assert status == 400

    status, _ = api("POST", "/api/upload/parse", {"files": [{"filename": "a", "bank": "CSOB", "content_base64": "!!"}]})
    assert status == 400

    status, _ = api("POST", "/api/upload/parse", {"files": []})
    assert status == 400

    status, _ = api("POST", "/api/upload/complete", {})
    assert status == 400


def test_rules_categories_and_transactions(api):
    api("POST", "/api/upload/parse", {"files": [_upload("csob.csv", "CSOB", CSOB)]})
    status, parsed = api("POST", "/api/upload/parse", {"files": [_upload("csob.csv", "CSOB", CSOB)]})
    api("POST", "/api/upload/complete", {"sessionId": parsed["sessionId"]})

    status, categories = api("GET", "/api/categories")
    assert status == 200
    food = next(c["id"] for c in categories if c["name"] == "Food")
    other = next(c["id"] for c in categories if c["name"] == "Other")

    status, rule = api("POST", "/api/rules", {"keyword": "tesco", "categoryId": food})
    assert status == 201
    assert rule["categoryName"] == "Food"

    status, err = api("POST", "/api/rules", {"keyword": "tesco", "categoryId": 999})
    assert (status, err["error"]["code"]) == (404, "NOT_FOUND")

    status, result = api("POST", "/api/rules/apply")
    assert result == {"categorized": 1, "total_uncategorized": 2}

    status, rule = api("PATCH", f"/api/rules/{rule['id']}", {"keyword": "TESCO EXPRESS"})
    assert (status, rule["keyword"]) == (200, "TESCO EXPRESS")
    status, rules = api("GET", "/api/rules")
    assert [r["keyword"] for r in rules] == ["TESCO EXPRESS"]
    status, _ = api("DELETE", f"/api/rules/{rule['id']}")
    assert status == 200
    status, _ = api("DELETE", f"/api/rules/{rule['id']}")
    assert status == 404

    status, txs = api("GET", "/api/transactions?uncategorized=true")
    assert [t["description"] for t in txs] == ["VYPLATA"]
    status, tx = api("PATCH", f"/api/transactions/{txs[0]['id']}", {"categoryId": other, "learn": False})
    assert (status, tx["categoryName"]) == (200, "Other")
    status, _ = api("PATCH", f"/api/transactions/{txs[0]['id']}", {})
    assert status == 400

    status, stats = api("GET", "/api/transactions/stats?startDate=2025-03-01&endDate=2025-03-31")
    assert status == 200
    assert stats["total_count"] == 2
    status, err = api("GET", "/api/transactions/stats?startDate=2025-04-01&endDate=2025-03-01")
    assert status == 400
    status, _ = api("GET", "/api/transactions/stats?startDate=yesterday")
    assert status == 400


def test_exchange_rate_endpoints(api, monkeypatch):
    def fake_rate(self, source, target):
        if source.upper() == "XXX":
            from spend_engine.errors import ExchangeRateError
            raise ExchangeRateError("down")
        return 25.0

    monkeypatch.setattr("spend_engine.exchange.ExchangeRateClient.get_rate", fake_rate)

    status, body = api("GET", "/api/exchange-rate?from=eur")
    assert (status, body) == (200, {"from": "EUR", "to": "CZK", "rate": 25.0})
    status, body = api("GET", "/api/exchange-rate?from=XXX&to=CZK")
    assert (status, body["error"]["code"]) == (500, "EXCHANGE_RATE_UNAVAILABLE")
    status, body = api("POST", "/api/exchange-rate/batch", {"currencies": ["EUR", "XXX"]})
    assert body == {"to": "CZK", "rates": {"EUR": 25.0}}
    status, _ = api("GET", "/api/exchange-rate")
    assert status == 400


def test_unknown_route(api):
    status, body = api("GET", "/api/nope")
    assert (status, body["error"]["code"]) == (404, "NOT_FOUND")


def test_category_endpoints(api):
    status, cat = api("POST", "/api/categories", {"name": "Groceries", "color": "#00aa00"})
    assert status == 201
    assert cat == {"id": cat["id"], "name": "Groceries", "color": "#00aa00", "transactionCount": 0}

    status, err = api("POST", "/api/categories", {"name": "groceries", "color": "#00aa00"})
    assert (status, err["error"]["code"]) == (409, "CONFLICT")
    status, err = api("POST", "/api/categories", {"name": "Pets"})
    assert (status, err["error"]["code"]) == (400, "VALIDATION_ERROR")
    status, err = api("POST", "/api/categories", {"name": "Income", "color": "#00aa00"})
    assert status == 400

    status, updated = api("PATCH", f"/api/categories/{cat['id']}", {"color": "#112233"})
    assert (status, updated["name"], updated["color"]) == (200, "Groceries", "#112233")
    status, err = api("PATCH", f"/api/categories/{cat['id']}", {})
    assert status == 400
    status, err = api("PATCH", "/api/categories/999", {"name": "Ghost"})
    assert status == 404

    status, body = api("DELETE", f"/api/categories/{cat['id']}")
    assert (status, body) == (200, {"deleted": cat["id"]})
    status, _ = api("DELETE", f"/api/categories/{cat['id']}")
    assert status == 404
    status, categories = api("GET", "/api/categories")
    assert "Groceries" not in [c["name"] for c in categories]


def test_storage_failure_maps_to_persistence_error(api, tmp_path):
    (tmp_path / "spend.db").write_bytes(b"not a database at all" * 50)
    status, body = api("GET", "/api/categories")
    assert (status, body["error"]["code"]) == (500, "PERSISTENCE_ERROR")
