"""
Tests for the append-only trade journal.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.journal import TradeEntry, TradeJournal


def _entry(symbol="AAPL", side="buy", qty=10, price=100.0, ts=None, fund="alpha"):
    return TradeEntry(
        timestamp=ts or datetime.now(timezone.utc).isoformat(),
        fund=fund,
        symbol=symbol,
        side=side,
        quantity=qty,
        price=price,
        total_value=qty * price,
        session_type="pre_market",
        reasoning="test",
    )


@pytest.fixture
def journal(tmp_path):
    with TradeJournal(tmp_path / "state" / "trade_journal.sqlite") as j:
        yield j


class TestTradeJournal:
    def test_insert_returns_increasing_ids(self, journal):
        first = journal.insert_trade(_entry())
        second = journal.insert_trade(_entry(symbol="MSFT"))
        assert second > first

    def test_close_trade_fills_linkage_once(self, journal):
        trade_id = journal.insert_trade(_entry())

        assert journal.close_trade(trade_id, close_price=110.0, pnl=100.0, pnl_pct=10.0) is True
        # Second close must not rewrite history
        assert journal.close_trade(trade_id, close_price=50.0, pnl=-500.0, pnl_pct=-50.0) is False

        [row] = journal.get_trades_in_days("alpha", 1)
        assert row.close_price == 110.0
        assert row.pnl == 100.0
        assert row.price == 100.0
        assert row.closed_at is not None

    def test_close_unknown_trade(self, journal):
        assert journal.close_trade(999, close_price=1.0, pnl=0.0, pnl_pct=0.0) is False

    def test_find_open_buys_excludes_closed(self, journal):
        open_id = journal.insert_trade(_entry())
        closed_id = journal.insert_trade(_entry())
        journal.close_trade(closed_id, close_price=1.0, pnl=0.0, pnl_pct=0.0)

        assert [t.id for t in journal.find_open_buys("AAPL")] == [open_id]

    def test_get_trades_in_days_filters_by_age_and_fund(self, journal):
        old = (datetime.now(timezone.utc) - timedelta(days=10)).isoformat()
        journal.insert_trade(_entry(ts=old))
        journal.insert_trade(_entry(symbol="NEW"))
        journal.insert_trade(_entry(symbol="OTHER", fund="beta"))

        assert [t.symbol for t in journal.get_trades_in_days("alpha", 7)] == ["NEW"]
        assert len(journal.get_trades_in_days("alpha", 30)) == 2

    def test_count_trades_since(self, journal):
        start = datetime.now(timezone.utc).isoformat()
        journal.insert_trade(_entry())
        journal.insert_trade(_entry(fund="beta"))
        assert journal.count_trades_since("alpha", start) == 1

    def test_trade_summary(self, journal):
        a = journal.insert_trade(_entry())
        b = journal.insert_trade(_entry())
        journal.insert_trade(_entry())
        journal.close_trade(a, close_price=110, pnl=100, pnl_pct=10)
        journal.close_trade(b, close_price=95, pnl=-50, pnl_pct=-5)

        summary = journal.get_trade_summary("alpha")
        assert summary == {
            "total_trades": 3,
            "winning_trades": 1,
            "losing_trades": 1,
            "total_pnl": 50.0,
        }
