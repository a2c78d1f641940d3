"""Settings via pydantic-settings with ANVIL_ env prefix.

Vendor credentials use validation_alias so the unprefixed variables the
vendors document (ANTHROPIC_API_KEY, OPENAI_API_KEY) work unchanged.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ANVIL_HOME = Path.home() / ".anvil"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ANVIL_", env_file=".env", populate_by_name=True)

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    cwd: str = Field(default_factory=os.getcwd)
    workflow_path: str = "anvil.yaml"
    policy_path: str = str(_ANVIL_HOME / "permissions.yaml")
    # When false the permission gate is skipped entirely
    restricted: bool = True

    # Provider credentials and endpoints
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com/v1"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    max_tokens: int = 8192

    # Retry
    retry_initial_backoff_ms: int = 200
    retry_backoff_factor: float = 2.0
    retry_max_attempts: int = 3
    retry_max_delay_s: float = 30.0
    retry_status_codes: list[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504, 529])

    # Tools
    tool_timeout: float = 300.0  # seconds
    fetch_truncation_limit: int = 40_000  # chars
    fetch_timeout: float = 30.0  # seconds
    max_read_size: int = 2000  # lines
    max_file_size: int = 5 * 1024 * 1024  # bytes
    stdout_max_prefix_lines: int = 200
    stdout_max_suffix_lines: int = 200
    stdout_max_line_length: int = 2000
    snapshot_dir: str = str(_ANVIL_HOME / "snapshots")

    # Turn limits
    max_requests_per_turn: int = 50
    max_tool_failure_per_turn: int = 5

    # Compaction
    compaction_enabled: bool = True
    compaction_token_threshold: int = 100_000
    compaction_retention_window: int = 6  # messages kept verbatim
    compaction_eviction_window: float = 0.2  # fraction of history evicted
    compaction_max_summary_tokens: int = 2000
    compaction_model: str = ""  # empty = use the agent's model

    # Storage
    db_url: str = f"sqlite+aiosqlite:///{_ANVIL_HOME / 'anvil.db'}"
    db_pool_size: int = 5  # ignored for SQLite
    db_max_overflow: int = 10

    # MCP
    mcp_enabled: bool = True
    mcp_config_path: str = ".mcp.json"
    mcp_startup_timeout: float = 20.0

    # Reasoning
    reasoning_effort: Literal["none", "low", "medium", "high"] = "medium"  # when an agent gives neither effort nor budget

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if not 0 < self.compaction_eviction_window <= 1:
            raise ValueError(
                f"compaction_eviction_window ({self.compaction_eviction_window}) must be in (0, 1]"
            )
        if self.retry_max_attempts < 0:
            raise ValueError("retry_max_attempts must be >= 0")
        if self.max_requests_per_turn < 1:
            raise ValueError("max_requests_per_turn must be >= 1")
        if self.retry_backoff_factor < 1:
            raise ValueError("retry_backoff_factor must be >= 1")
        return self
