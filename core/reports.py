"""Daily / weekly / monthly markdown reports written under the fund's reports/ directory."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from core.config import load_fund_config
from core.journal import TradeJournal
from infra.paths import fund_paths
from infra.state_store import FundStateStore

logger = logging.getLogger(__name__)

PERIOD_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}


def generate_report(fund_name: str, period: str, now: Optional[datetime] = None) -> Path:
    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown report period: {period}. Use 'daily', 'weekly' or 'monthly'")

    now = now or datetime.now(timezone.utc)
    config = load_fund_config(fund_name)
    store = FundStateStore(fund_name)
    portfolio = store.read_portfolio()

    initial = config.capital.initial
    total_value = portfolio.total_value if portfolio else initial
    cash = portfolio.cash if portfolio else initial
    return_pct = (total_value - initial) / initial * 100

    with TradeJournal.for_fund(fund_name) as journal:
        trades = journal.get_trades_in_days(fund_name, PERIOD_DAYS[period])

    title = config.fund.display_name or config.fund.name
    lines = [
        f"# {title}: {period.capitalize()} Report ({now.date().isoformat()})",
        "",
        "## Summary",
        f"- Portfolio value: ${total_value:,.2f}",
        f"- Cash: ${cash:,.2f}",
        f"- Initial capital: ${initial:,.2f}",
        f"- Return: {return_pct:+.2f}%",
        "",
        "## Positions",
    ]
    if portfolio and portfolio.positions:
        lines.append("| Symbol | Shares | Avg cost | Price | Value | P&L % | Stop |")
        lines.append("|---|---|---|---|---|---|---|")
        for p in portfolio.positions:
            stop = f"${p.stop_loss:.2f}" if p.stop_loss else "-"
            lines.append(
                f"| {p.symbol} | {p.shares:g} | ${p.avg_cost:.2f} | ${p.current_price:.2f} | "
                f"${p.market_value:,.2f} | {p.unrealized_pnl_pct:+.1f}% | {stop} |"
            )
    else:
        lines.append("No open positions.")

    lines += ["", f"## Trades (last {PERIOD_DAYS[period]} day(s))"]
    if trades:
        for t in trades:
            lines.append(
                f"- {t.timestamp[:16]} {t.side.upper()} {t.quantity:g} {t.symbol} @ ${t.price:.2f}"
                + (f" ({t.session_type})" if t.session_type else "")
            )
    else:
        lines.append("No trades.")

    out_dir = fund_paths(fund_name).reports / period
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / f"{now.date().isoformat()}.md"
    out_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    logger.info(f"Wrote {period} report for '{fund_name}' to {out_path}")
    return out_path
