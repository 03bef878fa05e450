"""TerminalHub configuration settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from terminalhub.infrastructure.config.settings_utils import (
    env_bool,
    env_float,
    env_int,
    env_list,
    env_str,
)
from terminalhub.infrastructure.logging_setup import configure_logging
from terminalhub.infrastructure.storage.path_guard import (
    ensure_within_root,
    normalize_path,
    safe_join,
)


class Settings(BaseSettings):
    """Application settings with env var support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Rooted runtime paths (workspaces must remain inside terminalhub_root)
    terminalhub_root: Path = Field(
        default_factory=lambda: Path(env_str("TERMINALHUB_ROOT", ".terminalhub"))
    )
    workspaces_path: Path = Field(default=Path("workspaces"))

    # Server/observability
    api_host: str = Field(default_factory=lambda: env_str("TERMINALHUB_HOST", "0.0.0.0"))
    api_port: int = Field(
        default_factory=lambda: env_int("TERMINALHUB_PORT", 3000, minimum=1, maximum=65535)
    )
    api_reload: bool = Field(default_factory=lambda: env_bool("TERMINALHUB_RELOAD", False))
    log_level: str = Field(default_factory=lambda: env_str("TERMINALHUB_LOG_LEVEL", "INFO"))
    log_json: bool = Field(default_factory=lambda: env_bool("TERMINALHUB_LOG_JSON", False))
    cors_origins: list[str] = Field(
        default_factory=lambda: env_list("TERMINALHUB_CORS_ORIGINS", default=["*"])
    )

    # Execution mode (process-wide, no per-session override)
    sandbox_enabled: bool = Field(
        default_factory=lambda: env_bool("TERMINALHUB_SANDBOX_ENABLED", True)
    )
    allow_direct_shell: bool = Field(
        default_factory=lambda: env_bool("TERMINALHUB_ALLOW_DIRECT_SHELL", False)
    )

    # Sandbox configuration
    sandbox_image: str = Field(
        default_factory=lambda: env_str("TERMINALHUB_SANDBOX_IMAGE", "debian:bookworm-slim")
    )
    sandbox_workdir: str = "/workspace"
    sandbox_setup_command: Optional[str] = Field(
        default_factory=lambda: env_str("TERMINALHUB_SANDBOX_SETUP_COMMAND", "") or None
    )
    sandbox_provision_timeout_seconds: float = Field(
        default_factory=lambda: env_float(
            "TERMINALHUB_SANDBOX_PROVISION_TIMEOUT", 30.0, minimum=1.0, maximum=600.0
        )
    )
    sandbox_memory_limit: str = Field(
        default_factory=lambda: env_str("TERMINALHUB_SANDBOX_MEMORY_LIMIT", "512m")
    )
    sandbox_cpu_quota: int = 50000
    sandbox_network_enabled: bool = Field(
        default_factory=lambda: env_bool("TERMINALHUB_SANDBOX_NETWORK", False)
    )
    sandbox_docker_binary: str = Field(
        default_factory=lambda: env_str("TERMINALHUB_DOCKER_BINARY", "docker")
    )
    sandbox_name_prefix: str = "terminalhub"

    # PTY configuration
    shell_path: str = Field(default_factory=lambda: env_str("TERMINALHUB_SHELL", "/bin/bash"))
    direct_shell_restricted: bool = Field(
        default_factory=lambda: env_bool("TERMINALHUB_DIRECT_SHELL_RESTRICTED", True)
    )
    terminal_name: str = "xterm-color"
    terminal_default_cols: int = 80
    terminal_default_rows: int = 30
    pty_kill_timeout_seconds: float = Field(
        default_factory=lambda: env_float(
            "TERMINALHUB_PTY_KILL_TIMEOUT", 3.0, minimum=0.1, maximum=60.0
        )
    )
    pty_output_queue_chunks: int = Field(
        default_factory=lambda: env_int(
            "TERMINALHUB_PTY_OUTPUT_QUEUE", 64, minimum=1, maximum=4096
        )
    )
    terminal_prompt: str = "$ "

    def _resolve_under_root(self, value: Path) -> Path:
        root = normalize_path(self.terminalhub_root)
        raw = Path(value)
        if raw.is_absolute():
            return ensure_within_root(root, raw)
        if not raw.parts:
            return root
        return safe_join(root, *raw.parts)

    def _normalize_runtime_paths(self) -> None:
        self.terminalhub_root = normalize_path(self.terminalhub_root)
        self.workspaces_path = self._resolve_under_root(self.workspaces_path)

    @model_validator(mode="after")
    def _normalize_paths_validator(self) -> "Settings":
        self._normalize_runtime_paths()
        return self

    def setup_logging(self) -> None:
        configure_logging(level=self.log_level, json_logs=self.log_json)

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        self._normalize_runtime_paths()

        for path in (self.terminalhub_root, self.workspaces_path):
            path.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
