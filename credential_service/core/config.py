"""Process configuration, read from the environment once at import.

  APP_ENV                     dev | test | prod            (dev)
  LOG_LEVEL                   debug | info | warning | error (info)
  LOG_JSON                    true/false, 1/0, yes/no      (false)
  DATABASE_URL                postgresql+asyncpg://...     (unset: in-memory registry)
  REDIS_URL                   redis://...                  (unset: in-process queue)
  CREDENTIAL_SIGNING_KEY      HMAC secret, >= 32 bytes     (unset: issuing refuses to start)
  LICENSE_VALIDITY_YEARS      int >= 1                     (20)
  CREDENTIAL_NUMBER_ATTEMPTS  int >= 1                     (5)

Bad values raise ValueError at import so a misconfigured worker never
starts.  The signing key is only held here as a string; it becomes a
usable key through SigningKey.from_settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

_TRUE = ("true", "1", "yes")
_FALSE = ("false", "0", "no")


def _getenv(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _getenv_choice(name: str, default: str, allowed: tuple[str, ...]) -> str:
    value = _getenv(name, default).lower()
    if value not in allowed:
        raise ValueError(f"{name} must be {'|'.join(allowed)} (got {value!r})")
    return value


def _getenv_bool(name: str, default: bool) -> bool:
    value = _getenv(name, "true" if default else "false").lower()
    if value not in _TRUE + _FALSE:
        raise ValueError(f"{name} must be a boolean (got {value!r})")
    return value in _TRUE


def _getenv_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    database_url: str | None
    redis_url: str | None
    # repr=False: the signing secret must never end up in a log line.
    signing_key: str | None = field(default=None, repr=False)
    license_validity_years: int = 20
    credential_number_attempts: int = 5

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"


def load_settings() -> Settings:
    app_env = _getenv_choice("APP_ENV", "dev", ("dev", "test", "prod"))
    database_url = _getenv("DATABASE_URL") or None

    if app_env == "prod" and database_url is None:
        # The in-memory registry forgets every case on restart.
        raise ValueError("APP_ENV=prod requires DATABASE_URL")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env,
        log_level=_getenv_choice(
            "LOG_LEVEL", "info", ("debug", "info", "warning", "error")
        ),
        log_json=_getenv_bool("LOG_JSON", False),
        database_url=database_url,
        redis_url=_getenv("REDIS_URL") or None,
        signing_key=_getenv("CREDENTIAL_SIGNING_KEY") or None,
        license_validity_years=_getenv_int("LICENSE_VALIDITY_YEARS", 20),
        credential_number_attempts=_getenv_int("CREDENTIAL_NUMBER_ATTEMPTS", 5),
    )


SETTINGS = load_settings()
