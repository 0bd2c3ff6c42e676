"""Process-level settings read from the environment."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError
from .storage import ensure_private_dir


DEFAULT_HOME = Path.home() / ".warden"


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"{name} must be a finite positive number, got {raw!r}")
    return value


@dataclass
class WardenSettings:
    """Where state lives and how long the core waits on a call."""

    home: Path = field(default_factory=lambda: DEFAULT_HOME)
    voice_timeout_seconds: float = 120.0
    voice_poll_interval_seconds: float = 1.0
    settlement_network: str = "base-sepolia"

    @property
    def ledger_path(self) -> Path:
        return self.home / "ledger.sqlite3"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home / "secrets" / "audit_hmac.key"

    def ensure_dirs(self) -> None:
        ensure_private_dir(self.home)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "WardenSettings":
        env = os.environ if env is None else env
        home = env.get("WARDEN_HOME")
        return cls(
            home=Path(home).expanduser() if home else DEFAULT_HOME,
            voice_timeout_seconds=_env_float(env, "WARDEN_VOICE_TIMEOUT_SECONDS", 120.0),
            voice_poll_interval_seconds=_env_float(env, "WARDEN_VOICE_POLL_INTERVAL", 1.0),
            settlement_network=env.get("WARDEN_SETTLEMENT_NETWORK") or "base-sepolia",
        )
