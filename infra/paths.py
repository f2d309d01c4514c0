"""
FundX Infrastructure: Workspace Paths

Resolves the on-disk layout of the workspace and of each fund.
The workspace root defaults to ~/.fundx and can be moved with FUNDX_HOME.
"""

import os
from dataclasses import dataclass
from pathlib import Path


def workspace_root() -> Path:
    """Return the workspace root (re-read from the environment on every call)."""
    return Path(os.getenv("FUNDX_HOME", str(Path.home() / ".fundx"))).expanduser()


def funds_dir() -> Path:
    return workspace_root() / "funds"


def global_config_path() -> Path:
    return workspace_root() / "config.yaml"


def daemon_log_path() -> Path:
    return workspace_root() / "daemon.log"


@dataclass(frozen=True)
class FundPaths:
    """All filesystem locations owned by one fund."""
    root: Path

    @property
    def config(self) -> Path:
        return self.root / "fund_config.yaml"

    @property
    def state_dir(self) -> Path:
        return self.root / "state"

    @property
    def portfolio(self) -> Path:
        return self.state_dir / "portfolio.json"

    @property
    def tracker(self) -> Path:
        return self.state_dir / "objective_tracker.json"

    @property
    def session_log(self) -> Path:
        return self.state_dir / "session_log.json"

    @property
    def journal(self) -> Path:
        return self.state_dir / "trade_journal.sqlite"

    @property
    def reports(self) -> Path:
        return self.root / "reports"

    @property
    def analysis(self) -> Path:
        return self.root / "analysis"

    @property
    def claude_md(self) -> Path:
        """Standing instructions for the fund's agent, maintained by the owner."""
        return self.root / "CLAUDE.md"


def fund_paths(fund_name: str) -> FundPaths:
    return FundPaths(root=funds_dir() / fund_name)
