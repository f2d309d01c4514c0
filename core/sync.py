"""Rebuild a fund's portfolio document from the broker's account and positions."""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from core.broker import AlpacaBroker, BrokerGateway
from core.models import Portfolio, Position, utc_now_iso
from infra.state_store import FundStateStore

logger = logging.getLogger(__name__)


def sync_portfolio(
    fund_name: str,
    broker: Optional[BrokerGateway] = None,
    broker_factory: Callable[[str], BrokerGateway] = AlpacaBroker.for_fund,
    store: Optional[FundStateStore] = None,
) -> Portfolio:
    """
    Replace positions and cash with the broker's view.

    stop_loss, entry_date and entry_reason are local annotations the broker
    does not know about, so they are carried over from the existing document.
    """
    broker = broker or broker_factory(fund_name)
    store = store or FundStateStore(fund_name)

    account = broker.get_account()
    broker_positions = broker.get_positions()
    existing = store.read_portfolio()

    today = datetime.now(timezone.utc).date().isoformat()

    positions = []
    for bp in broker_positions:
        prior = existing.get_position(bp.symbol) if existing else None
        positions.append(Position(
            symbol=bp.symbol,
            shares=bp.shares,
            avg_cost=bp.avg_cost,
            current_price=bp.current_price,
            market_value=bp.market_value,
            unrealized_pnl=bp.unrealized_pnl,
            unrealized_pnl_pct=bp.unrealized_pnl_pct,
            stop_loss=prior.stop_loss if prior else None,
            entry_date=(prior.entry_date if prior and prior.entry_date else today),
            entry_reason=(prior.entry_reason if prior and prior.entry_reason else ""),
        ))

    portfolio = Portfolio(
        last_updated=utc_now_iso(),
        cash=account.cash,
        total_value=0.0,
        positions=positions,
    )
    total_value = portfolio.recompute_total()
    for position in portfolio.positions:
        position.weight_pct = (position.market_value / total_value * 100) if total_value > 0 else 0.0
    reported = account.portfolio_value or account.equity
    if abs(reported - total_value) > 0.01:
        logger.debug(
            f"Broker reports ${reported:.2f} for '{fund_name}', positions and cash sum to ${total_value:.2f}"
        )
    store.write_portfolio(portfolio)
    logger.info(
        f"Synced portfolio for '{fund_name}': {len(positions)} position(s), "
        f"cash=${account.cash:.2f}, total=${total_value:.2f}"
    )
    return portfolio
