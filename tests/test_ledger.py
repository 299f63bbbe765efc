from datetime import datetime

import pytest

from database.models import TradeStatus, TradeType
from logic import ledger
from logic.errors import EntryFieldsImmutableError, TradeValidationError

OPEN = datetime(2025, 1, 1)
FILL = datetime(2025, 1, 2)
CLOSE = datetime(2025, 2, 1)


def _open_trade(**kw):
    args = dict(
        trade_id="t1",
        portfolio_id="p1",
        coin_symbol="btc",
        entry_price=100000,
        amount=0.01,
        sum_plus_fee=1010,
        open_date=OPEN,
        entry_fee=1,
        deposit_percent=10,
    )
    args.update(kw)
    return ledger.new_trade(**args)


def test_new_trade_defaults_provenance_and_tracking():
    t = _open_trade()
    assert t.coin_symbol == "BTC"
    assert t.status == TradeStatus.OPEN
    assert t.trade_type == TradeType.LONG
    assert t.initial_entry_price == 100000
    assert t.initial_amount == 0.01
    assert t.original_amount == t.remaining_amount == 0.01
    assert t.is_partial_close is False
    assert t.is_split is False


@pytest.mark.parametrize(
    "field,value",
    [
        ("entry_price", 0),
        ("amount", -1),
        ("sum_plus_fee", 0),
        ("entry_fee", 101),
        ("deposit_percent", -0.1),
    ],
)
def test_new_trade_rejects_invalid_inputs(field, value):
    with pytest.raises(TradeValidationError):
        _open_trade(**{field: value})


def test_new_trade_cannot_start_closed():
    with pytest.raises(TradeValidationError):
        _open_trade(status=TradeStatus.CLOSED)


def test_fill_sets_actual_values():
    t = _open_trade()
    ledger.fill(t, 1020, 0.0101, FILL, entry_price=100990)
    assert t.status == TradeStatus.FILLED
    assert t.sum_plus_fee == 1020
    assert t.amount == t.original_amount == t.remaining_amount == 0.0101
    assert t.entry_price == 100990
    assert t.filled_date == FILL
    # Provenance stays as entered.
    assert t.initial_amount == 0.01
    assert t.initial_entry_price == 100000


def test_fill_only_from_open():
    t = _open_trade()
    ledger.fill(t, 1010, 0.01, FILL)
    with pytest.raises(TradeValidationError):
        ledger.fill(t, 1010, 0.01, FILL)


def test_close_requires_filled():
    t = _open_trade()
    with pytest.raises(TradeValidationError):
        ledger.close(t, 110000, 1, CLOSE)
    assert t.status == TradeStatus.OPEN


def test_close_records_exit():
    t = _open_trade(status=TradeStatus.FILLED)
    ledger.close(t, 110000, 1, CLOSE)
    assert t.status == TradeStatus.CLOSED
    assert t.exit_price == 110000
    assert t.exit_fee == 1
    assert t.close_date == CLOSE


def test_close_applies_entry_corrections():
    t = _open_trade(status=TradeStatus.FILLED)
    ledger.close(t, 110000, 1, CLOSE, entry_price=99000, amount=0.011, sum_plus_fee=1100)
    assert t.entry_price == 99000
    assert t.amount == t.original_amount == 0.011
    assert t.sum_plus_fee == 1100


def test_entry_fields_immutable_once_closed():
    t = _open_trade(status=TradeStatus.FILLED)
    ledger.close(t, 110000, 1, CLOSE)
    with pytest.raises(EntryFieldsImmutableError, match="immutable"):
        ledger.edit_trade(t, entry_price=1)
    with pytest.raises(EntryFieldsImmutableError):
        ledger.close(t, 120000, 1, CLOSE, amount=0.02)
    assert t.entry_price == 100000
    assert t.exit_price == 110000


def test_closed_trade_can_still_change_filled_date():
    t = _open_trade(status=TradeStatus.FILLED)
    ledger.close(t, 110000, 1, CLOSE)
    ledger.edit_trade(t, filled_date=FILL)
    assert t.filled_date == FILL


def test_edit_amount_resets_tracking():
    t = _open_trade()
    ledger.edit_trade(t, amount=0.02, sum_plus_fee=2020)
    assert t.amount == t.original_amount == t.remaining_amount == 0.02
    assert t.initial_amount == 0.01


def test_partial_close_creates_fragment(trade_factory):
    t = trade_factory(amount=1.0, sum_plus_fee=100000.0, entry_price=99000.0)
    fragment = ledger.partial_close(t, 0.4, 110000, 1, CLOSE, fragment_id="f1", tolerance=5e-9)

    assert fragment.id == "f1"
    assert fragment.status == TradeStatus.CLOSED
    assert fragment.is_partial_close is True
    assert fragment.parent_trade_id == "t1"
    assert fragment.amount == fragment.closed_amount == 0.4
    assert fragment.sum_plus_fee == pytest.approx(40000.0)
    assert fragment.entry_price == 99000.0
    assert fragment.exit_price == 110000
    assert fragment.initial_amount == 0.4

    assert t.status == TradeStatus.FILLED
    assert t.remaining_amount == pytest.approx(0.6)
    assert t.original_amount == 1.0
    assert t.amount == 1.0


def test_partial_close_proportions_use_original_amount(trade_factory):
    t = trade_factory(amount=1.0, sum_plus_fee=1000.0)
    ledger.partial_close(t, 0.5, 1500, 0, CLOSE, fragment_id="f1", tolerance=5e-9)
    second = ledger.partial_close(t, 0.25, 1500, 0, CLOSE, fragment_id="f2", tolerance=5e-9)
    assert second.sum_plus_fee == pytest.approx(250.0)


def test_partial_close_rejects_more_than_remaining(trade_factory):
    t = trade_factory(amount=1.0, sum_plus_fee=1000.0)
    ledger.partial_close(t, 0.7, 1500, 0, CLOSE, fragment_id="f1", tolerance=5e-9)
    with pytest.raises(TradeValidationError, match=r"remaining amount \(0\.3"):
        ledger.partial_close(t, 0.5, 1500, 0, CLOSE, fragment_id="f2", tolerance=5e-9)
    assert t.remaining_amount == pytest.approx(0.3)


def test_remaining_amount_is_monotonic_and_reaches_zero(trade_factory):
    t = trade_factory(amount=1.0, sum_plus_fee=1000.0)
    seen = [t.remaining_amount]
    for i, part in enumerate([0.1, 0.2, 0.3, 0.4]):
        ledger.partial_close(t, part, 1200, 0.5, CLOSE, fragment_id=f"f{i}", tolerance=5e-9)
        seen.append(t.remaining_amount)
    assert all(b <= a for a, b in zip(seen, seen[1:]))
    assert t.remaining_amount == 0
    assert t.status == TradeStatus.CLOSED
    assert t.close_date == CLOSE


def test_partial_close_on_fragment_is_rejected(trade_factory):
    t = trade_factory(amount=1.0, sum_plus_fee=1000.0)
    fragment = ledger.partial_close(t, 0.5, 1500, 0, CLOSE, fragment_id="f1", tolerance=5e-9)
    fragment.status = TradeStatus.FILLED
    with pytest.raises(TradeValidationError):
        ledger.partial_close(fragment, 0.1, 1500, 0, CLOSE, fragment_id="f2", tolerance=5e-9)


def test_amount_edit_blocked_after_partial_close(trade_factory):
    t = trade_factory(amount=1.0, sum_plus_fee=1000.0)
    ledger.partial_close(t, 0.5, 1500, 0, CLOSE, fragment_id="f1", tolerance=5e-9)
    with pytest.raises(TradeValidationError):
        ledger.edit_trade(t, amount=2.0)


def test_tolerance_follows_decimal_places(monkeypatch):
    assert ledger.tolerance_for(2) == pytest.approx(0.005)
    assert ledger.tolerance_for(8) == pytest.approx(5e-9)
    monkeypatch.setenv("DEFAULT_DECIMAL_PLACES", "4")
    assert ledger.tolerance_for(None) == pytest.approx(5e-5)


def test_ensure_deletable_blocks_long_with_open_shorts(trade_factory):
    long_ = trade_factory()
    short = trade_factory(id="s1", trade_type=TradeType.SHORT, parent_trade_id="t1", status=TradeStatus.OPEN)
    with pytest.raises(TradeValidationError, match="open SHORT"):
        ledger.ensure_deletable(long_, [short])
    short.status = TradeStatus.CLOSED
    ledger.ensure_deletable(long_, [short])
