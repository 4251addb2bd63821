"""Runtime configuration.

Settings are loaded from constructor kwargs and `CHATPOLL_*` environment
variables (nested fields use `__`, e.g. `CHATPOLL_RETRY__MAX_RETRIES=5`).
`load_settings()` layers a JSON file on top: values present in the file are
passed as constructor kwargs and therefore win over the environment.

Invariant:
    `state_dir` is always an absolute, user-expanded path.
    Every account has exactly one token source (`token` or `token_env`).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal, TypeAlias

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

StoreBackend: TypeAlias = Literal["file", "sqlite", "memory"]


class RetryPolicy(BaseModel):
    """Backoff knobs (milliseconds).

    `max_retries=None` means retryable failures are retried indefinitely.
    """

    model_config = ConfigDict(frozen=True)

    initial_delay_ms: int = Field(default=1_000, ge=0)
    max_delay_ms: int = Field(default=60_000, ge=0)
    factor: float = 2.0
    jitter: float = 0.1
    max_retries: int | None = None
    rate_limit_floor_ms: int = Field(default=5_000, ge=0)

    @field_validator("factor")
    @classmethod
    def _validate_factor(cls, value: float) -> float:
        if value < 1:
            raise ValueError(f"factor must be >= 1; got {value}")
        return value

    @field_validator("jitter")
    @classmethod
    def _validate_jitter(cls, value: float) -> float:
        if not 0 <= value < 1:
            raise ValueError(f"jitter must be in [0, 1); got {value}")
        return value

    @field_validator("max_retries")
    @classmethod
    def _validate_max_retries(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError(f"max_retries must be >= 0 or None; got {value}")
        return value

    @model_validator(mode="after")
    def _validate_delay_bounds(self) -> RetryPolicy:
        if self.initial_delay_ms > self.max_delay_ms:
            raise ValueError(
                "initial_delay_ms must not exceed max_delay_ms "
                f"({self.initial_delay_ms} > {self.max_delay_ms})"
            )
        return self


class AccountConfig(BaseModel):
    """One polled account. The bearer token is never logged."""

    account_id: str
    token: SecretStr | None = None
    token_env: str | None = None

    @field_validator("account_id")
    @classmethod
    def _validate_account_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("account_id must not be empty")
        return value

    @model_validator(mode="after")
    def _validate_token_source(self) -> AccountConfig:
        if (self.token is None) == (self.token_env is None):
            raise ValueError(
                f"account {self.account_id!r}: set exactly one of token or token_env"
            )
        return self


class Settings(BaseSettings):
    """Settings for a multi-account polling process."""

    model_config = SettingsConfigDict(
        env_prefix="CHATPOLL_",
        env_nested_delimiter="__",
    )

    base_url: str = "http://127.0.0.1:8080"
    state_dir: Path = Path("~/.chatpoll")
    store_backend: StoreBackend = "file"
    long_poll_timeout_seconds: int = 30
    batch_size: int = 100
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    auto_resume: bool = False
    accounts: list[AccountConfig] = Field(default_factory=list)

    @field_validator("state_dir")
    @classmethod
    def _normalize_state_dir(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @field_validator("long_poll_timeout_seconds", "batch_size")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"must be > 0; got {value}")
        return value

    @model_validator(mode="after")
    def _validate_unique_accounts(self) -> Settings:
        seen: set[str] = set()
        dupes: list[str] = []
        for account in self.accounts:
            if account.account_id in seen:
                dupes.append(account.account_id)
            seen.add(account.account_id)
        if dupes:
            raise ValueError(f"duplicate account_id(s): {sorted(set(dupes))!r}")
        return self


def load_settings(path: Path | None = None, **overrides: Any) -> Settings:
    """Build `Settings` from an optional JSON file plus explicit overrides.

    Precedence: `overrides` > JSON file > environment > defaults.

    Raises:
        ValueError: If the file is not valid JSON or not a JSON object.
    """

    file_values: dict[str, Any] = {}
    if path is not None:
        try:
            payload = json.loads(path.expanduser().read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON at {path}: {e}") from e
        if not isinstance(payload, dict):
            raise ValueError(f"Invalid settings at {path}: expected JSON object")
        file_values = payload

    values = {**file_values, **{k: v for k, v in overrides.items() if v is not None}}
    return Settings(**values)
