"""
Process settings (pydantic-settings), loaded once from the environment and ``.env``.

Code execution knobs mirror the workflow engine's environment flags:
CODE_PYTHON_ENABLED, CODE_PYTHON_RUNNER_ENABLED, CODE_ENABLE_STDOUT, etc.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_csv(raw: str | None) -> list[str]:
    """Split a comma-separated setting into stripped, non-empty parts."""
    return [s.strip() for s in (raw or "").split(",") if s.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "codenode"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    # Language switches
    CODE_PYTHON_ENABLED: bool = True
    CODE_PYTHON_RUNNER_ENABLED: bool = False

    # Quota
    CODE_EXEC_TIMEOUT_MS: int = Field(default=60_000, ge=1)
    CODE_PER_ITEM_CONCURRENCY: int = Field(default=1, ge=1)

    # Isolated runner
    CODE_RUNNER_PYTHON: str | None = None
    CODE_RUNNER_GRACE_MS: int = Field(default=1_000, ge=0)
    CODE_RUNNER_MAX_MESSAGE_BYTES: int = Field(default=16 * 1024 * 1024, ge=65_536)
    # Worker rlimits; 0 leaves the inherited limit in place
    CODE_RUNNER_MEMORY_LIMIT_MB: int = Field(default=1_024, ge=0)
    CODE_RUNNER_MAX_OPEN_FILES: int = Field(default=256, ge=0)

    # Mirror captured user output into the process log
    CODE_ENABLE_STDOUT: bool = False

    # Comma-separated top-level modules added to the import whitelist at startup
    CODE_EXTRA_MODULES: str = ""
    # Comma-separated keys readable through the `env` helper
    CODE_ENV_ALLOWED_KEYS: str = ""
    # Comma-separated hosts for the optional `http` helper ("*", "api.x.com", "*.x.com")
    CODE_HTTP_ALLOWED_HOSTS: str = ""
    CODE_HTTP_TIMEOUT: float = 30.0

    # Custom node compilation / test run
    NODE_COMPILER_TIMEOUT_MS: int = Field(default=5_000, ge=1)
    NODE_COMPILER_MAX_SOURCE_KB: int = Field(default=100, ge=1)


settings = Settings()  # type: ignore
