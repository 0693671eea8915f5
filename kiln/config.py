"""Kiln configuration — loaded from .env via pydantic-settings."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class KilnSettings(BaseSettings):
    """All Kiln configuration. Reads from .env file and KILN_* environment variables.

    Built once at process start with ``load_settings()`` and handed to every
    component that needs it. Nothing in Kiln reads a module-level instance.
    """

    # --- Oracle (OpenAI-compatible chat completions) ---
    oracle_url: str = Field(
        default="http://localhost:44468",
        description="Base URL of the code-authoring oracle (OpenAI-compatible)",
    )
    oracle_api_key: str = Field(
        default="",
        description="Bearer token for the oracle, empty for local servers",
    )
    oracle_model: str = Field(
        default="current",
        description="Model identifier sent with every completion request",
    )
    oracle_temperature: float = Field(
        default=0.0,
        ge=0.0,
        description="Sampling temperature; kept at the minimum for reproducible repairs",
    )
    oracle_max_tokens: int = Field(default=2048, description="Max tokens per completion")
    oracle_timeout: float = Field(default=120.0, description="HTTP timeout in seconds")

    # --- Synthesis ---
    max_repair_attempts: int = Field(
        default=3,
        ge=0,
        description="Repair attempts after the first synthesis (total calls = this + 1)",
    )

    # --- Storage ---
    function_store_dir: Path = Field(
        default=Path.home() / ".kiln" / "functions",
        description="Directory holding one JSON record per stored function",
    )

    # --- Sandbox ---
    sandbox_timeout: float = Field(
        default=15.0,
        gt=0.0,
        description="Wall-clock deadline for a single sandboxed invocation, in seconds",
    )
    sandbox_memory_limit_mb: int = Field(
        default=1024,
        ge=0,
        description="Address-space cap for the sandbox worker process in MiB (0 = no cap, POSIX only)",
    )

    # --- Tracing ---
    trace_dir: Path = Field(
        default=Path.home() / ".kiln" / "traces",
        description="Where Synapse JSONL traces are written",
    )
    persist_traces: bool = Field(default=True, description="Write traces to trace_dir")
    trace_buffer_size: int = Field(
        default=10_000,
        ge=1,
        description="Synapse events kept in memory per dispatcher (oldest dropped first)",
    )

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )

    model_config = SettingsConfigDict(
        env_prefix="KILN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def load_settings(**overrides) -> KilnSettings:
    """Build the settings struct. Keyword overrides win over env and .env."""
    return KilnSettings(**overrides)
