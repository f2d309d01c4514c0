"""
FundX Core: Trade Journal

Append-only ledger of executed orders, one SQLite file per fund.

Rows are never rewritten. Closing a trade fills the close-linkage columns
(closed_at, close_price, pnl, pnl_pct) of the existing row exactly once.
"""

import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional
import logging

from infra.paths import fund_paths

logger = logging.getLogger(__name__)


@dataclass
class TradeEntry:
    timestamp: str
    fund: str
    symbol: str
    side: str  # buy/sell
    quantity: float
    price: float
    total_value: float
    order_type: str = "market"
    session_type: Optional[str] = None
    reasoning: Optional[str] = None
    # Close linkage
    closed_at: Optional[str] = None
    close_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    id: Optional[int] = None


_COLUMNS = (
    "timestamp", "fund", "symbol", "side", "quantity", "price", "total_value",
    "order_type", "session_type", "reasoning",
    "closed_at", "close_price", "pnl", "pnl_pct",
)


class TradeJournal:
    """
    SQLite trade ledger for a fund.

    Usage:
        with TradeJournal.for_fund("growth-fund") as journal:
            journal.insert_trade(entry)
    """

    def __init__(self, db_file: Path):
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_file))
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    @classmethod
    def for_fund(cls, fund_name: str) -> "TradeJournal":
        return cls(fund_paths(fund_name).journal)

    def _init_schema(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                fund TEXT NOT NULL,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                quantity REAL NOT NULL,
                price REAL NOT NULL,
                total_value REAL NOT NULL,
                order_type TEXT NOT NULL,
                session_type TEXT,
                reasoning TEXT,
                closed_at TEXT,
                close_price REAL,
                pnl REAL,
                pnl_pct REAL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_fund ON trades(fund)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_timestamp ON trades(timestamp)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol)")
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def insert_trade(self, entry: TradeEntry) -> int:
        values = asdict(entry)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        cursor = self._conn.execute(
            f"INSERT INTO trades ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            tuple(values[c] for c in _COLUMNS),
        )
        self._conn.commit()
        logger.info(
            f"Journal: {entry.side} {entry.quantity:g} {entry.symbol} @ ${entry.price:.2f} "
            f"(fund={entry.fund}, session={entry.session_type})"
        )
        return int(cursor.lastrowid)

    def close_trade(
        self,
        trade_id: int,
        close_price: float,
        pnl: float,
        pnl_pct: float,
        closed_at: Optional[str] = None,
    ) -> bool:
        """Attach close linkage to an open row. Returns False if already closed or unknown."""
        closed_at = closed_at or datetime.now(timezone.utc).isoformat()
        cursor = self._conn.execute(
            "UPDATE trades SET closed_at = ?, close_price = ?, pnl = ?, pnl_pct = ? "
            "WHERE id = ? AND closed_at IS NULL",
            (closed_at, close_price, pnl, pnl_pct, trade_id),
        )
        self._conn.commit()
        return cursor.rowcount == 1

    def find_open_buys(self, symbol: str) -> List[TradeEntry]:
        rows = self._conn.execute(
            "SELECT * FROM trades WHERE symbol = ? AND side = 'buy' AND closed_at IS NULL ORDER BY id",
            (symbol,),
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def get_trades_in_days(self, fund_name: str, days: int) -> List[TradeEntry]:
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        rows = self._conn.execute(
            "SELECT * FROM trades WHERE fund = ? AND timestamp >= ? ORDER BY timestamp DESC",
            (fund_name, since),
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def count_trades_since(self, fund_name: str, since_iso: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM trades WHERE fund = ? AND timestamp >= ?",
            (fund_name, since_iso),
        ).fetchone()
        return int(row["n"])

    def get_trade_summary(self, fund_name: str) -> Dict[str, float]:
        row = self._conn.execute(
            """
            SELECT COUNT(*) AS total_trades,
                   SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END) AS winning,
                   SUM(CASE WHEN pnl < 0 THEN 1 ELSE 0 END) AS losing,
                   COALESCE(SUM(pnl), 0) AS total_pnl
            FROM trades WHERE fund = ?
            """,
            (fund_name,),
        ).fetchone()
        return {
            "total_trades": row["total_trades"] or 0,
            "winning_trades": row["winning"] or 0,
            "losing_trades": row["losing"] or 0,
            "total_pnl": float(row["total_pnl"] or 0.0),
        }

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> TradeEntry:
        data = {key: row[key] for key in row.keys()}
        return TradeEntry(**data)
