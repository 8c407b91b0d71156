from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    heartbeat_interval: float = 10.0
    missed_heartbeats: int = 3
    cancel_grace: float = 30.0
    runner_offline_ttl: float = 600.0
    poll_wait: float = 5.0
    sweep_interval: Optional[float] = None  # defaults to heartbeat_interval

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if env is None else env
        heartbeat = _number(env, "HEARTBEAT_INTERVAL", 10.0)
        return cls(
            database_url=env.get("DATABASE_URL") or None,
            heartbeat_interval=heartbeat,
            missed_heartbeats=int(_number(env, "LEASE_MISSED_HEARTBEATS", 3)),
            cancel_grace=_number(env, "CANCEL_GRACE_SECONDS", 30.0),
            runner_offline_ttl=_number(env, "RUNNER_OFFLINE_TTL", 600.0),
            poll_wait=_number(env, "POLL_WAIT_SECONDS", 5.0),
            sweep_interval=_number(env, "SWEEP_INTERVAL", heartbeat),
        )

    @property
    def effective_sweep_interval(self) -> float:
        return self.sweep_interval or self.heartbeat_interval
