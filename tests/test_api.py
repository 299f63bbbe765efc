import pytest
from fastapi.testclient import TestClient

from backend_api.main import app

# No context manager: startup would create the default database file.
client = TestClient(app)


def _open_long(symbol="BTC", amount=1.0):
    r = client.post(
        "/portfolios/p1/trades",
        json={
            "coin_symbol": symbol,
            "entry_price": 100000,
            "amount": amount,
            "sum_plus_fee": 101000,
            "entry_fee": 1,
            "status": "FILLED",
            "open_date": "2025-01-01T00:00:00",
        },
    )
    assert r.status_code == 200, r.text
    return r.json()


def test_health():
    assert client.get("/health").json() == {"status": "ok"}


def test_create_portfolio(db_engine_and_session):
    r = client.post(
        "/portfolios",
        json={"name": "Api", "coins": [{"symbol": "btc", "percentage": 100, "decimalPlaces": 8}]},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["coins"][0]["symbol"] == "BTC"
    assert client.get(f"/portfolios/{body['id']}").json()["name"] == "Api"


def test_error_mapping(portfolio):
    assert client.get("/portfolios/missing").status_code == 404
    assert client.get("/trades/missing").status_code == 404

    r = client.post(
        "/portfolios/p1/trades",
        json={"coin_symbol": "DOGE", "entry_price": 0.1, "amount": 100, "sum_plus_fee": 10},
    )
    assert r.status_code == 400
    assert "DOGE" in r.json()["detail"]

    r = client.post("/portfolios/p1/trades", json={"coin_symbol": "BTC"})
    assert r.status_code == 422


def test_short_and_close_flow(portfolio):
    parent = _open_long()
    r = client.post(
        "/portfolios/p1/shorts",
        json={"amount": 0.5, "sale_price": 110000, "sale_fee": 1, "parent_trade_id": parent["id"], "status": "FILLED"},
    )
    assert r.status_code == 200, r.text
    short = r.json()
    assert short["trade_type"] == "SHORT"

    r = client.post(f"/trades/{parent['id']}/close", json={"exit_price": 120000, "exit_fee": 1})
    assert r.status_code == 400
    assert "open SHORT" in r.json()["detail"]

    r = client.post(f"/trades/{short['id']}/close", json={"exit_price": 100000, "exit_fee": 1})
    assert r.status_code == 200, r.text
    assert r.json()["profit"]["kind"] == "coins"

    stats = client.get("/portfolios/p1/stats").json()
    assert stats["short"]["total_trades"] == 1
    assert "BTC" in stats["short"]["total_profit_coins"]
    assert stats["fees"]["total"] == pytest.approx(stats["fees"]["standard"] + stats["fees"]["averaging"])


def test_split_and_export(portfolio):
    parent = _open_long(amount=0.01)
    r = client.post(f"/trades/{parent['id']}/split", json={"amounts": [0.006, 0.004]})
    assert r.status_code == 200, r.text
    assert len(r.json()["fragments"]) == 2

    rows = client.get("/portfolios/p1/export").json()
    assert len(rows) == 3
    original = next(row for row in rows if row["id"] == parent["id"])
    assert original["is_split"] is True
    assert original["exit_price"] is None

    filled = client.get("/portfolios/p1/trades", params={"status": "FILLED"}).json()
    assert len(filled) == 2


def test_update_and_delete(portfolio):
    parent = _open_long()
    r = client.put(f"/trades/{parent['id']}", json={"deposit_percent": 15})
    assert r.status_code == 200, r.text
    assert r.json()["deposit_percent"] == 15

    assert client.delete(f"/trades/{parent['id']}").json() == {"status": "ok"}
    assert client.get(f"/trades/{parent['id']}").status_code == 404


def test_calculate_fee(portfolio):
    r = client.get("/portfolios/p1/calculate-fee", params={"type": "exit"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["level"] == "Intro 1"
    assert body["next_level"] == "Intro 2"
    assert client.get("/portfolios/p1/calculate-fee", params={"type": "maker"}).status_code == 400
