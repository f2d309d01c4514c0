"""
FundX Core: Broker Gateway (Alpaca)

Account, position and order access behind a capability-described adapter.
Credentials are resolved per call from configuration; nothing is cached
between funds.
"""

import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

import requests

from core.config import FundConfig, GlobalConfig, load_fund_config, load_global_config
from core.exceptions import BrokerError, FundConfigError

logger = logging.getLogger(__name__)

ALPACA_PAPER_URL = "https://paper-api.alpaca.markets"
ALPACA_LIVE_URL = "https://api.alpaca.markets"
ALPACA_DATA_URL = "https://data.alpaca.markets"


@dataclass(frozen=True)
class BrokerCredentials:
    api_key: str
    secret_key: str
    trading_url: str
    mode: str

    def headers(self) -> Dict[str, str]:
        return {
            "APCA-API-KEY-ID": self.api_key,
            "APCA-API-SECRET-KEY": self.secret_key,
            "Content-Type": "application/json",
        }


def resolve_broker_mode(fund_config: FundConfig, global_config: GlobalConfig) -> str:
    return fund_config.broker.mode or global_config.broker.mode or "paper"


def resolve_credentials(
    fund_name: str,
    fund_config: Optional[FundConfig] = None,
    global_config: Optional[GlobalConfig] = None,
) -> BrokerCredentials:
    """Build broker credentials for a fund; fund broker mode overrides the global one."""
    global_config = global_config or load_global_config()
    fund_config = fund_config or load_fund_config(fund_name)

    api_key = global_config.broker.api_key
    secret_key = global_config.broker.secret_key
    if not api_key or not secret_key:
        raise FundConfigError(
            "Broker API credentials not configured. Set broker.api_key and broker.secret_key in config.yaml",
            fund_name=fund_name,
        )
    mode = resolve_broker_mode(fund_config, global_config)
    trading_url = ALPACA_LIVE_URL if mode == "live" else ALPACA_PAPER_URL
    return BrokerCredentials(api_key=api_key, secret_key=secret_key, trading_url=trading_url, mode=mode)


@dataclass(frozen=True)
class BrokerCapabilities:
    stocks: bool = True
    etfs: bool = True
    options: bool = False
    crypto: bool = False
    paper_trading: bool = True
    live_trading: bool = True


@dataclass
class BrokerAccount:
    cash: float
    portfolio_value: float
    buying_power: float
    equity: float
    currency: str = "USD"


@dataclass
class BrokerPosition:
    symbol: str
    shares: float
    avg_cost: float
    current_price: float
    market_value: float
    unrealized_pnl: float
    unrealized_pnl_pct: float
    side: str = "long"


@dataclass
class BrokerOrder:
    id: str
    symbol: str
    side: str
    qty: float
    type: str
    status: str
    filled_qty: Optional[float] = None
    filled_avg_price: Optional[float] = None
    created_at: Optional[str] = None
    raw: Dict = field(default_factory=dict, repr=False)


class BrokerGateway(ABC):
    """Broker adapter contract consumed by the stop-loss executor and portfolio sync."""

    name: str = "abstract"
    capabilities: BrokerCapabilities = BrokerCapabilities()

    @abstractmethod
    def get_account(self) -> BrokerAccount:
        ...

    @abstractmethod
    def get_positions(self) -> List[BrokerPosition]:
        ...

    @abstractmethod
    def get_latest_prices(self, symbols: List[str]) -> Dict[str, float]:
        """Latest trade price per symbol, fetched in a single call."""

    @abstractmethod
    def place_order(
        self,
        symbol: str,
        qty: float,
        side: str,
        order_type: str = "market",
        limit_price: Optional[float] = None,
        time_in_force: str = "day",
    ) -> BrokerOrder:
        ...

    def place_market_sell(self, symbol: str, qty: float) -> BrokerOrder:
        return self.place_order(symbol=symbol, qty=qty, side="sell", order_type="market")


def _f(value, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


class AlpacaBroker(BrokerGateway):
    """
    Alpaca REST connector with exponential backoff.

    Retries on 429, 5xx and network errors. Does NOT retry other 4xx
    responses (bad symbol, insufficient qty, auth) since they will not
    succeed on a second attempt.
    """

    name = "alpaca"
    capabilities = BrokerCapabilities(stocks=True, etfs=True, options=True, crypto=True)

    def __init__(
        self,
        credentials: BrokerCredentials,
        data_url: str = ALPACA_DATA_URL,
        timeout: float = 20.0,
        max_retries: int = 3,
    ):
        self.credentials = credentials
        self.data_url = data_url
        self.timeout = timeout
        self.max_retries = max_retries

    @classmethod
    def for_fund(cls, fund_name: str, **kwargs) -> "AlpacaBroker":
        return cls(resolve_credentials(fund_name), **kwargs)

    def _req(self, method: str, url: str, body: Optional[dict] = None,
             params: Optional[Dict[str, str]] = None):
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = requests.request(
                    method,
                    url,
                    headers=self.credentials.headers(),
                    json=body,
                    params=params,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None
                text = e.response.text if e.response is not None else ""
                if status_code is not None and 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Alpaca API client error: {status_code} - {text}")
                    raise BrokerError(f"Alpaca API error {status_code}: {text}", status_code=status_code) from e
                logger.warning(f"Alpaca API error ({status_code}) on {url}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {url}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {url}")
        raise BrokerError(f"Request to {url} failed after {self.max_retries} attempts: {last_exception}")

    def get_account(self) -> BrokerAccount:
        data = self._req("GET", f"{self.credentials.trading_url}/v2/account")
        return BrokerAccount(
            cash=_f(data.get("cash")),
            portfolio_value=_f(data.get("portfolio_value") or data.get("equity")),
            buying_power=_f(data.get("buying_power")),
            equity=_f(data.get("equity")),
            currency=data.get("currency") or "USD",
        )

    def get_positions(self) -> List[BrokerPosition]:
        data = self._req("GET", f"{self.credentials.trading_url}/v2/positions")
        return [
            BrokerPosition(
                symbol=p["symbol"],
                shares=_f(p.get("qty")),
                avg_cost=_f(p.get("avg_entry_price")),
                current_price=_f(p.get("current_price")),
                market_value=_f(p.get("market_value")),
                unrealized_pnl=_f(p.get("unrealized_pl")),
                unrealized_pnl_pct=_f(p.get("unrealized_plpc")) * 100,
                side=p.get("side", "long"),
            )
            for p in data
        ]

    def get_latest_prices(self, symbols: List[str]) -> Dict[str, float]:
        if not symbols:
            return {}
        data = self._req(
            "GET",
            f"{self.data_url}/v2/stocks/trades/latest",
            params={"symbols": ",".join(symbols)},
        )
        trades = data.get("trades") or {}
        return {symbol: float(trade["p"]) for symbol, trade in trades.items() if "p" in trade}

    def place_order(
        self,
        symbol: str,
        qty: float,
        side: str,
        order_type: str = "market",
        limit_price: Optional[float] = None,
        time_in_force: str = "day",
    ) -> BrokerOrder:
        body = {
            "symbol": symbol,
            "qty": f"{qty:g}",
            "side": side,
            "type": order_type,
            "time_in_force": time_in_force,
        }
        if limit_price is not None:
            body["limit_price"] = f"{limit_price:.2f}"

        data = self._req("POST", f"{self.credentials.trading_url}/v2/orders", body=body)
        logger.info(f"Order accepted: {side} {qty:g} {symbol} ({order_type}) id={data.get('id')}")
        return BrokerOrder(
            id=str(data.get("id", "")),
            symbol=data.get("symbol", symbol),
            side=data.get("side", side),
            qty=_f(data.get("qty"), qty),
            type=data.get("type", order_type),
            status=data.get("status", "new"),
            filled_qty=_f(data.get("filled_qty")) if data.get("filled_qty") else None,
            filled_avg_price=_f(data.get("filled_avg_price")) if data.get("filled_avg_price") else None,
            created_at=data.get("created_at"),
            raw=data,
        )
