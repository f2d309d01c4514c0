"""
FundX Infrastructure: State Store

Per-fund persistent documents (portfolio, objective tracker, session log)
with atomic writes. A reader never observes a partially written file:
documents are written to a temp file in the same directory and renamed
into place.

Missing files are an expected condition (a fund with no session yet) and
read back as None. A present-but-malformed file is a hard error.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Type, TypeVar
import logging

from pydantic import BaseModel, ValidationError

from core.exceptions import StateValidationError
from core.models import ObjectiveTracker, Portfolio, SessionLog, utc_now_iso
from infra.paths import FundPaths, fund_paths

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to path via temp file + os.replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.stem}_",
        suffix=".json.tmp",
    )
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Optional[Any]:
    """Return parsed JSON, or None when the file does not exist."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        raise StateValidationError(str(path), e) from e


class FundStateStore:
    """
    State documents for a single fund.

    Usage:
        store = FundStateStore("growth-fund")
        portfolio = store.read_portfolio()
        portfolio.cash += 100
        portfolio.recompute_total()
        store.write_portfolio(portfolio)
    """

    def __init__(self, fund_name: str, paths: Optional[FundPaths] = None):
        self.fund_name = fund_name
        self.paths = paths or fund_paths(fund_name)

    def _read_model(self, path: Path, model: Type[M]) -> Optional[M]:
        data = read_json(path)
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise StateValidationError(str(path), e) from e

    def _write_model(self, path: Path, doc: BaseModel) -> None:
        write_json_atomic(path, doc.model_dump(mode="json"))
        logger.debug(f"Saved {path.name} for fund '{self.fund_name}'")

    # Portfolio
    def read_portfolio(self) -> Optional[Portfolio]:
        return self._read_model(self.paths.portfolio, Portfolio)

    def write_portfolio(self, portfolio: Portfolio) -> None:
        self._write_model(self.paths.portfolio, portfolio)

    # Objective tracker
    def read_tracker(self) -> Optional[ObjectiveTracker]:
        return self._read_model(self.paths.tracker, ObjectiveTracker)

    def write_tracker(self, tracker: ObjectiveTracker) -> None:
        self._write_model(self.paths.tracker, tracker)

    # Session log
    def read_session_log(self) -> Optional[SessionLog]:
        return self._read_model(self.paths.session_log, SessionLog)

    def write_session_log(self, log: SessionLog) -> None:
        self._write_model(self.paths.session_log, log)

    def init_fund_state(self, initial_capital: float, objective_type: str) -> None:
        """Create the directory tree and the zero-position documents for a new fund."""
        for directory in (
            self.paths.state_dir,
            self.paths.analysis,
            self.paths.reports / "daily",
            self.paths.reports / "weekly",
            self.paths.reports / "monthly",
        ):
            directory.mkdir(parents=True, exist_ok=True)

        self.write_portfolio(Portfolio(
            last_updated=utc_now_iso(),
            cash=initial_capital,
            total_value=initial_capital,
            positions=[],
        ))
        self.write_tracker(ObjectiveTracker(
            type=objective_type,
            initial_capital=initial_capital,
            current_value=initial_capital,
            progress_pct=0.0,
            status="on_track",
        ))
        logger.info(f"Initialized state for fund '{self.fund_name}' (capital={initial_capital:.2f})")
