"""Engine settings resolved from defaults and ``STUU_*`` environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from bridge.client import DEFAULT_RECONNECT_INTERVAL, DEFAULT_REQUEST_TIMEOUT, DEFAULT_SOCKET_PATH
from domain.history import PROJECT_HISTORY_LIMIT

from .reconcile import DEFAULT_INSTRUMENT_UID

DEFAULT_TICK_INTERVAL = 0.12


@dataclass(frozen=True)
class EngineSettings:
    """Runtime knobs for one engine session; durations are in seconds."""

    home: Path = Path.home() / ".stuu"
    socket_path: str = DEFAULT_SOCKET_PATH
    native_transport: bool = True
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL
    tick_interval: float = DEFAULT_TICK_INTERVAL
    history_limit: int = PROJECT_HISTORY_LIMIT
    default_instrument_uid: str = DEFAULT_INSTRUMENT_UID

    @property
    def projects_dir(self) -> Path:
        return self.home / "projects"

    @classmethod
    def from_environment(cls, env: Optional[Mapping[str, str]] = None) -> EngineSettings:
        """Read overrides from ``env`` (defaults to :data:`os.environ`).

        Millisecond variables (``STUU_REQUEST_TIMEOUT_MS``,
        ``STUU_RECONNECT_INTERVAL_MS``, ``STUU_TICK_INTERVAL_MS``) are converted
        to seconds. ``STUU_NATIVE_TRANSPORT=0`` keeps the engine on its
        simulated clock. Malformed numbers raise :class:`ValueError` naming
        the offending variable.
        """

        environment: Mapping[str, str] = env if env is not None else os.environ
        defaults = cls()
        home = environment.get("STUU_HOME")
        return cls(
            home=Path(home).expanduser() if home else defaults.home,
            socket_path=environment.get("STUU_NATIVE_SOCKET") or defaults.socket_path,
            native_transport=_flag(environment.get("STUU_NATIVE_TRANSPORT"), True),
            request_timeout=_millis(
                environment, "STUU_REQUEST_TIMEOUT_MS", defaults.request_timeout
            ),
            reconnect_interval=_millis(
                environment, "STUU_RECONNECT_INTERVAL_MS", defaults.reconnect_interval
            ),
            tick_interval=_millis(environment, "STUU_TICK_INTERVAL_MS", defaults.tick_interval),
            history_limit=_positive_int(
                environment, "STUU_HISTORY_LIMIT", defaults.history_limit
            ),
            default_instrument_uid=environment.get("STUU_DEFAULT_INSTRUMENT")
            or defaults.default_instrument_uid,
        )


def _flag(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _millis(environment: Mapping[str, str], name: str, default: float) -> float:
    raw = environment.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of milliseconds, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value / 1000.0


def _positive_int(environment: Mapping[str, str], name: str, default: int) -> int:
    raw = environment.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {raw!r}")
    return value


__all__ = ["DEFAULT_TICK_INTERVAL", "EngineSettings"]
