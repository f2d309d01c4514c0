"""
Fund and Global Configuration

Loads config.yaml (workspace-wide) and funds/<name>/fund_config.yaml and
validates both against Pydantic schemas. Invalid or missing files raise
FundConfigError so that only the operation that needed them fails.

Usage:
    from core.config import load_fund_config, load_global_config

    config = load_fund_config("growth-fund")
    tz = config.schedule.timezone
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.exceptions import FundConfigError
from infra.paths import fund_paths, funds_dir, global_config_path

logger = logging.getLogger(__name__)

HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")


def _check_hhmm(value: str) -> str:
    if not HHMM.match(value):
        raise ValueError(f"time must be HH:MM (24h), got {value!r}")
    return value


# ===== Fund Schema =====
class FundInfo(BaseModel):
    name: str = Field(min_length=1)
    display_name: str = ""
    description: str = ""
    created: Optional[str] = None
    status: Literal["active", "paused", "closed"] = "active"


class CapitalConfig(BaseModel):
    initial: float = Field(gt=0)
    currency: str = "USD"


class ObjectiveConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "growth"


class RiskConfig(BaseModel):
    """Per-fund risk limits"""
    model_config = ConfigDict(extra="allow")

    profile: Literal["conservative", "moderate", "aggressive"] = "moderate"
    stop_loss_pct: float = Field(default=8.0, gt=0, lt=100, description="Default stop distance below avg cost")
    max_position_pct: float = Field(default=25.0, gt=0, le=100, description="Max weight of a single position")
    max_drawdown_pct: float = Field(default=15.0, gt=0, le=100, description="Max drawdown from peak")


class SessionConfig(BaseModel):
    enabled: bool = True
    time: str
    focus: str = Field(min_length=1)
    max_duration_minutes: Optional[int] = Field(default=None, gt=0)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        return _check_hhmm(v)


class SpecialSessionConfig(BaseModel):
    trigger: str = Field(min_length=1)
    time: str
    focus: str = Field(min_length=1)
    enabled: bool = True
    max_duration_minutes: int = Field(default=15, gt=0)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        return _check_hhmm(v)


class ScheduleConfig(BaseModel):
    timezone: str = "UTC"
    trading_days: List[str] = Field(default_factory=lambda: ["MON", "TUE", "WED", "THU", "FRI"])
    sessions: Dict[str, SessionConfig] = Field(default_factory=dict)
    special_sessions: List[SpecialSessionConfig] = Field(default_factory=list)

    @field_validator("trading_days")
    @classmethod
    def validate_days(cls, v: List[str]) -> List[str]:
        normalized = [d.strip().upper() for d in v]
        for day in normalized:
            if day not in WEEKDAYS:
                raise ValueError(f"Unknown trading day {day!r}; expected one of {', '.join(WEEKDAYS)}")
        return normalized


class BrokerModeConfig(BaseModel):
    provider: str = "alpaca"
    mode: Optional[Literal["paper", "live"]] = None


class TelegramToggle(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = False


class QuietHours(BaseModel):
    enabled: bool = False
    start: str = "23:00"
    end: str = "07:00"

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v: str) -> str:
        return _check_hhmm(v)


class NotificationsConfig(BaseModel):
    telegram: TelegramToggle = Field(default_factory=TelegramToggle)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)


class ClaudeConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None


class FundConfig(BaseModel):
    """Complete fund_config.yaml schema"""
    fund: FundInfo
    capital: CapitalConfig
    objective: ObjectiveConfig = Field(default_factory=ObjectiveConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    broker: BrokerModeConfig = Field(default_factory=BrokerModeConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)


# ===== Global Schema =====
class GlobalBrokerConfig(BaseModel):
    provider: str = "alpaca"
    api_key: Optional[str] = None
    secret_key: Optional[str] = None
    mode: Literal["paper", "live"] = "paper"


class TelegramConfig(BaseModel):
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = "INFO"


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class DaemonScheduleConfig(BaseModel):
    """Workspace-wide cadences evaluated in each fund's local time"""
    daily_report_time: str = "18:30"
    weekly_report_time: str = "19:00"
    weekly_report_day: str = "FRI"
    monthly_report_time: str = "19:00"
    portfolio_sync_time: str = "09:30"
    market_open: str = "09:30"
    market_close: str = "16:00"
    stoploss_interval_minutes: int = Field(default=5, gt=0, le=60)

    @field_validator(
        "daily_report_time", "weekly_report_time", "monthly_report_time",
        "portfolio_sync_time", "market_open", "market_close",
    )
    @classmethod
    def validate_time(cls, v: str) -> str:
        return _check_hhmm(v)

    @field_validator("weekly_report_day")
    @classmethod
    def validate_day(cls, v: str) -> str:
        day = v.strip().upper()
        if day not in WEEKDAYS:
            raise ValueError(f"Unknown weekday {v!r}")
        return day


class GlobalConfig(BaseModel):
    broker: GlobalBrokerConfig = Field(default_factory=GlobalBrokerConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    default_model: Optional[str] = None
    max_budget_usd: Optional[float] = Field(default=None, gt=0)
    anthropic_api_key: Optional[str] = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    schedule: DaemonScheduleConfig = Field(default_factory=DaemonScheduleConfig)

    def resolve_anthropic_key(self) -> Optional[str]:
        return self.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY")


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain a mapping at the top level")
    return data


def _format_validation_error(err: ValidationError) -> str:
    parts = []
    for item in err.errors():
        loc = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)


def load_global_config(path: Optional[Path] = None) -> GlobalConfig:
    """Load config.yaml; a missing file yields all defaults."""
    path = path or global_config_path()
    if not path.exists():
        logger.debug(f"No global config at {path}, using defaults")
        return GlobalConfig()
    try:
        return GlobalConfig.model_validate(_read_yaml(path))
    except ValidationError as e:
        raise FundConfigError(f"Invalid global config {path}: {_format_validation_error(e)}") from e
    except (yaml.YAMLError, ValueError) as e:
        raise FundConfigError(f"Unreadable global config {path}: {e}") from e


def load_fund_config(fund_name: str) -> FundConfig:
    path = fund_paths(fund_name).config
    if not path.exists():
        raise FundConfigError(f"Fund '{fund_name}' has no config at {path}", fund_name=fund_name)
    try:
        config = FundConfig.model_validate(_read_yaml(path))
    except ValidationError as e:
        raise FundConfigError(
            f"Invalid config for fund '{fund_name}': {_format_validation_error(e)}",
            fund_name=fund_name,
        ) from e
    except (yaml.YAMLError, ValueError) as e:
        raise FundConfigError(f"Unreadable config for fund '{fund_name}': {e}", fund_name=fund_name) from e
    if config.fund.name != fund_name:
        raise FundConfigError(
            f"Config for fund '{fund_name}' declares fund.name '{config.fund.name}'; they must match",
            fund_name=fund_name,
        )
    return config


def save_fund_config(config: FundConfig) -> Path:
    path = fund_paths(config.fund.name).config
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.model_dump(mode="json", exclude_none=True), f, sort_keys=False, width=120)
    return path


def list_fund_names() -> List[str]:
    """Fund directory names in a stable (sorted) order."""
    root = funds_dir()
    if not root.exists():
        return []
    return sorted(p.name for p in root.iterdir() if p.is_dir())
