"""
Stop-Loss Monitor / Executor

Check phase (read-only): compare live prices against each position's
stop_loss and report breaches.

Execute phase (mutating): sell each breached position at market, journal
the fill, then remove the sold symbols from the portfolio in a single
atomic write. Each symbol is an independent unit; one failed order does
not stop the rest of the batch.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from core.broker import AlpacaBroker, BrokerGateway
from core.config import load_fund_config
from core.exceptions import CriticalDataUnavailable
from core.journal import TradeEntry, TradeJournal
from core.models import StopLossEvent, utc_now_iso
from infra.state_store import FundStateStore

logger = logging.getLogger(__name__)

BrokerFactory = Callable[[str], BrokerGateway]


def _default_broker(fund_name: str) -> BrokerGateway:
    return AlpacaBroker.for_fund(fund_name)


@dataclass
class StopLossExecution:
    """Outcome of one execute batch."""
    fund: str
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    proceeds: float = 0.0
    cash_after: Optional[float] = None
    total_value_after: Optional[float] = None

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


def check_stop_losses(
    fund_name: str,
    broker: Optional[BrokerGateway] = None,
    broker_factory: BrokerFactory = _default_broker,
    store: Optional[FundStateStore] = None,
) -> List[StopLossEvent]:
    """Return positions whose latest price is at or below their stop."""
    store = store or FundStateStore(fund_name)
    portfolio = store.read_portfolio()
    if portfolio is None:
        logger.debug(f"No portfolio for fund '{fund_name}', skipping stop-loss check")
        return []

    eligible = [
        p for p in portfolio.positions
        if p.stop_loss is not None and p.stop_loss > 0 and p.shares > 0
    ]
    if not eligible:
        return []

    broker = broker or broker_factory(fund_name)
    symbols = [p.symbol for p in eligible]
    try:
        prices = broker.get_latest_prices(symbols)
    except Exception as e:
        raise CriticalDataUnavailable(f"latest prices for {fund_name}", e) from e

    triggered: List[StopLossEvent] = []
    for pos in eligible:
        current_price = prices.get(pos.symbol)
        if current_price is None:
            logger.warning(f"No price for {pos.symbol} in fund '{fund_name}', skipping stop check")
            continue
        if current_price <= pos.stop_loss:
            loss = (current_price - pos.avg_cost) * pos.shares
            loss_pct = ((current_price - pos.avg_cost) / pos.avg_cost) * 100 if pos.avg_cost else 0.0
            triggered.append(StopLossEvent(
                symbol=pos.symbol,
                shares=pos.shares,
                stop_price=pos.stop_loss,
                current_price=current_price,
                avg_cost=pos.avg_cost,
                loss=loss,
                loss_pct=loss_pct,
            ))

    return triggered


def execute_stop_losses(
    fund_name: str,
    events: List[StopLossEvent],
    broker: Optional[BrokerGateway] = None,
    broker_factory: BrokerFactory = _default_broker,
    store: Optional[FundStateStore] = None,
    journal: Optional[TradeJournal] = None,
) -> StopLossExecution:
    """
    Liquidate breached positions.

    Trusts the check-phase snapshot: prices are not re-read between orders.
    The final portfolio write only reflects symbols whose sell was accepted.
    """
    result = StopLossExecution(fund=fund_name)
    if not events:
        return result

    broker = broker or broker_factory(fund_name)
    store = store or FundStateStore(fund_name)
    owns_journal = journal is None
    journal = journal or TradeJournal.for_fund(fund_name)

    sold: List[StopLossEvent] = []
    try:
        for event in events:
            try:
                broker.place_market_sell(event.symbol, event.shares)
            except Exception as e:
                logger.error(f"Stop-loss sell failed for {event.symbol} (fund '{fund_name}'): {e}")
                result.failed[event.symbol] = str(e)
                continue

            sold.append(event)
            result.succeeded.append(event.symbol)
            try:
                journal.insert_trade(TradeEntry(
                    timestamp=utc_now_iso(),
                    fund=fund_name,
                    symbol=event.symbol,
                    side="sell",
                    quantity=event.shares,
                    price=event.current_price,
                    total_value=event.proceeds,
                    order_type="market",
                    session_type="stop_loss",
                    reasoning=event.reasoning(),
                ))
            except Exception as e:
                # The order is live at the broker; the portfolio must still drop the symbol.
                logger.error(f"Failed to journal stop-loss sell of {event.symbol} (fund '{fund_name}'): {e}")
    finally:
        if owns_journal:
            journal.close()

    if not sold:
        return result

    portfolio = store.read_portfolio()
    if portfolio is None:
        logger.warning(f"Portfolio for fund '{fund_name}' disappeared during stop-loss execution")
        return result

    sold_symbols = {e.symbol for e in sold}
    result.proceeds = sum(e.proceeds for e in sold)
    portfolio.positions = [p for p in portfolio.positions if p.symbol not in sold_symbols]
    portfolio.cash = portfolio.cash + result.proceeds
    portfolio.recompute_total()
    portfolio.last_updated = utc_now_iso()
    store.write_portfolio(portfolio)

    result.cash_after = portfolio.cash
    result.total_value_after = portfolio.total_value
    logger.info(
        f"Stop-loss executed for '{fund_name}': sold={sorted(sold_symbols)}, "
        f"failed={sorted(result.failed)}, proceeds=${result.proceeds:.2f}"
    )
    return result


def apply_default_stop_losses(fund_name: str, store: Optional[FundStateStore] = None) -> int:
    """
    Set stop_loss = avg_cost * (1 - stop_loss_pct/100) on positions without one.

    Idempotent; explicitly set stops are never overwritten.
    """
    config = load_fund_config(fund_name)
    store = store or FundStateStore(fund_name)
    portfolio = store.read_portfolio()
    if portfolio is None:
        return 0

    stop_loss_pct = config.risk.stop_loss_pct
    updated = 0
    for pos in portfolio.positions:
        if pos.stop_loss is None or pos.stop_loss == 0:
            pos.stop_loss = pos.avg_cost * (1 - stop_loss_pct / 100)
            updated += 1

    if updated:
        store.write_portfolio(portfolio)
        logger.info(f"Applied default {stop_loss_pct}% stops to {updated} position(s) in '{fund_name}'")
    return updated


def run_stop_loss_check(
    fund_name: str,
    broker_factory: BrokerFactory = _default_broker,
    alerts=None,
) -> Optional[StopLossExecution]:
    """Check then execute; the unit of work the scheduler dispatches."""
    triggered = check_stop_losses(fund_name, broker_factory=broker_factory)
    if not triggered:
        return None

    logger.warning(
        f"Stop-loss triggered for '{fund_name}': {', '.join(e.symbol for e in triggered)}"
    )
    execution = execute_stop_losses(fund_name, triggered, broker_factory=broker_factory)

    if alerts is not None:
        lines = [e.reasoning() for e in triggered if e.symbol in execution.succeeded]
        lines += [f"{symbol}: sell FAILED ({err})" for symbol, err in execution.failed.items()]
        alerts.notify_stop_loss(fund_name, lines)
    return execution


def stop_loss_check_due(now: datetime, interval_minutes: int) -> bool:
    """Minute-aligned cadence so restarts never drift the check schedule."""
    return now.minute % interval_minutes == 0


__all__ = [
    "StopLossExecution",
    "check_stop_losses",
    "execute_stop_losses",
    "apply_default_stop_losses",
    "run_stop_loss_check",
    "stop_loss_check_due",
]
