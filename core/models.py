"""
FundX Core: State Document Models

Pydantic schemas for the per-fund documents persisted by the state store.
Documents are validated on every read; the agent also edits these files,
so unknown keys are preserved rather than rejected.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Position(BaseModel):
    model_config = ConfigDict(extra="allow")

    symbol: str = Field(min_length=1)
    shares: float
    avg_cost: float = Field(ge=0)
    current_price: float = Field(default=0.0, ge=0)
    market_value: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    weight_pct: float = 0.0
    stop_loss: Optional[float] = None
    entry_date: Optional[str] = None
    entry_reason: Optional[str] = None


class Portfolio(BaseModel):
    """Cash plus positions. total_value must equal cash + sum of market values."""
    model_config = ConfigDict(extra="allow")

    last_updated: str
    cash: float
    total_value: float
    positions: List[Position] = Field(default_factory=list)

    def recompute_total(self) -> float:
        self.total_value = self.cash + sum(p.market_value for p in self.positions)
        return self.total_value

    def get_position(self, symbol: str) -> Optional[Position]:
        for position in self.positions:
            if position.symbol == symbol:
                return position
        return None


class ObjectiveTracker(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    initial_capital: float
    current_value: float
    progress_pct: float = 0.0
    status: str = "on_track"


class SessionLog(BaseModel):
    """Most recently completed session for a fund."""
    model_config = ConfigDict(extra="allow")

    fund: str
    session_type: str
    started_at: str
    ended_at: Optional[str] = None
    trades_executed: int = 0
    summary: str = ""
    cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    model_used: Optional[str] = None
    num_turns: int = 0
    session_id: str = ""
    status: str = "success"
    error: Optional[str] = None
    analysis_file: Optional[str] = None


@dataclass
class StopLossEvent:
    """A position whose observed price is at or below its stop."""
    symbol: str
    shares: float
    stop_price: float
    current_price: float
    avg_cost: float
    loss: float
    loss_pct: float

    @property
    def proceeds(self) -> float:
        return self.current_price * self.shares

    def reasoning(self) -> str:
        return (
            f"Stop-loss triggered at ${self.stop_price:.2f}. "
            f"Current price: ${self.current_price:.2f}. "
            f"Loss: ${self.loss:.2f} ({self.loss_pct:.1f}%)"
        )
