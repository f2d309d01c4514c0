"""
Per-call capability definitions handed to the agent.

Everything is built fresh for one fund on every invocation: configs are
re-read, and broker credentials are resolved inside each handler call, so
nothing assembled for one fund can leak into another fund's session.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ai.agent_client import AgentTool
from core.broker import AlpacaBroker, BrokerCredentials, resolve_credentials
from core.config import FundConfig, GlobalConfig, load_fund_config, load_global_config
from infra.alerting import AlertService
from infra.paths import fund_paths

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 256_000


def _resolve_in_root(root: Path, relative: str) -> Path:
    """Resolve a tool-supplied path, refusing anything outside the fund root."""
    root = root.resolve()
    target = (root / relative).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"Path escapes fund directory: {relative}")
    return target


def telegram_enabled(fund_config: FundConfig, global_config: GlobalConfig) -> bool:
    return bool(
        global_config.telegram.bot_token
        and global_config.telegram.chat_id
        and fund_config.notifications.telegram.enabled
    )


def build_fund_tools(
    fund_name: str,
    fund_config: Optional[FundConfig] = None,
    global_config: Optional[GlobalConfig] = None,
) -> List[AgentTool]:
    fund_config = fund_config or load_fund_config(fund_name)
    global_config = global_config or load_global_config()
    root = fund_paths(fund_name).root

    def broker() -> AlpacaBroker:
        creds: BrokerCredentials = resolve_credentials(fund_name, fund_config, global_config)
        return AlpacaBroker(creds)

    def get_account(_: Dict[str, Any]) -> Dict[str, Any]:
        account = broker().get_account()
        return {
            "cash": account.cash,
            "portfolio_value": account.portfolio_value,
            "buying_power": account.buying_power,
            "equity": account.equity,
        }

    def get_positions(_: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [vars(p) for p in broker().get_positions()]

    def place_order(args: Dict[str, Any]) -> Dict[str, Any]:
        order = broker().place_order(
            symbol=args["symbol"],
            qty=float(args["qty"]),
            side=args["side"],
            order_type=args.get("order_type", "market"),
            limit_price=args.get("limit_price"),
            time_in_force=args.get("time_in_force", "day"),
        )
        return {"id": order.id, "status": order.status, "symbol": order.symbol, "qty": order.qty, "side": order.side}

    def get_latest_prices(args: Dict[str, Any]) -> Dict[str, float]:
        return broker().get_latest_prices([s.upper() for s in args["symbols"]])

    def read_file(args: Dict[str, Any]) -> str:
        path = _resolve_in_root(root, args["path"])
        if not path.is_file():
            raise FileNotFoundError(f"No such file: {args['path']}")
        return path.read_text(encoding="utf-8")[:MAX_FILE_BYTES]

    def write_file(args: Dict[str, Any]) -> str:
        path = _resolve_in_root(root, args["path"])
        if path.name == "fund_config.yaml":
            raise PermissionError("fund_config.yaml is read-only for sessions")
        content = args["content"]
        if len(content.encode("utf-8")) > MAX_FILE_BYTES:
            raise ValueError("File content too large")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return f"Wrote {len(content)} chars to {args['path']}"

    tools = [
        AgentTool(
            name="get_account",
            description="Broker account summary: cash, portfolio value, buying power, equity.",
            input_schema={"type": "object", "properties": {}},
            handler=get_account,
        ),
        AgentTool(
            name="get_positions",
            description="Open positions at the broker.",
            input_schema={"type": "object", "properties": {}},
            handler=get_positions,
        ),
        AgentTool(
            name="place_order",
            description="Submit an order. side is buy or sell; order_type is market or limit.",
            input_schema={
                "type": "object",
                "properties": {
                    "symbol": {"type": "string"},
                    "qty": {"type": "number", "exclusiveMinimum": 0},
                    "side": {"type": "string", "enum": ["buy", "sell"]},
                    "order_type": {"type": "string", "enum": ["market", "limit"]},
                    "limit_price": {"type": "number"},
                    "time_in_force": {"type": "string", "enum": ["day", "gtc"]},
                },
                "required": ["symbol", "qty", "side"],
            },
            handler=place_order,
        ),
        AgentTool(
            name="get_latest_prices",
            description="Latest trade price for each symbol.",
            input_schema={
                "type": "object",
                "properties": {"symbols": {"type": "array", "items": {"type": "string"}}},
                "required": ["symbols"],
            },
            handler=get_latest_prices,
        ),
        AgentTool(
            name="read_fund_file",
            description="Read a text file inside the fund directory (e.g. state/portfolio.json).",
            input_schema={
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "required": ["path"],
            },
            handler=read_file,
        ),
        AgentTool(
            name="write_fund_file",
            description="Create or replace a text file inside the fund directory (state/, analysis/, reports/).",
            input_schema={
                "type": "object",
                "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
                "required": ["path", "content"],
            },
            handler=write_file,
        ),
    ]

    if telegram_enabled(fund_config, global_config):
        alerts = AlertService.from_config(global_config)
        quiet_hours = fund_config.notifications.quiet_hours
        timezone = fund_config.schedule.timezone

        def send_telegram(args: Dict[str, Any]) -> str:
            sent = alerts.send_text(
                args["message"],
                quiet_hours=quiet_hours,
                timezone=timezone,
                urgent=bool(args.get("urgent", False)),
            )
            return "sent" if sent else "not sent (quiet hours or delivery failure)"

        tools.append(AgentTool(
            name="send_telegram",
            description="Notify the fund owner on Telegram. Set urgent for messages that must bypass quiet hours.",
            input_schema={
                "type": "object",
                "properties": {"message": {"type": "string"}, "urgent": {"type": "boolean"}},
                "required": ["message"],
            },
            handler=send_telegram,
        ))

    logger.debug(f"Built {len(tools)} tools for fund '{fund_name}'")
    return tools
