from dataclasses import dataclass, field, fields
import json
import os

ENV_PREFIX = "BOOKING_GUARD_"


def _bool(env_val: str, default: bool) -> bool:
    if env_val is None:
        return default
    return env_val.lower() in {"1", "true", "yes", "on"}


@dataclass
class Config:
    max_attempts: int = 3
    lockout_duration_s: int = 300
    failure_streak_ttl_s: int | None = 900

    store_backend: str = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str = ""
    redis_fallback_to_memory: bool = True
    key_prefix: str = "booking-guard:booking-code"
    db_url: str = "sqlite:///./booking_guard.db"

    fail_policy: str = "closed"

    attempts_log_file: str = "attempts.log"
    enable_attempt_log: bool = True

    admin_token: str = "change-me"
    booking_codes: dict[str, str] = field(default_factory=dict)


def _coerce(name: str, current, raw: str):
    if name == "failure_streak_ttl_s":
        return None if raw.lower() in {"", "none", "off"} else int(raw)
    if isinstance(current, bool):
        return _bool(raw, current)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, dict):
        return json.loads(raw)
    return raw


def apply_env(cfg: Config, environ=None) -> Config:
    environ = os.environ if environ is None else environ
    for f in fields(cfg):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        setattr(cfg, f.name, _coerce(f.name, getattr(cfg, f.name), raw))
    return cfg


def load_config(path: str | None = None) -> Config:
    cfg = Config()
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for k, v in data.items():
            if hasattr(cfg, k):
                setattr(cfg, k, v)

    return apply_env(cfg)
