"""
Codex Engine Configuration

Loaded from environment variables (and ``.env``), with defaults.
"""

import os
from dataclasses import dataclass
from typing import Optional

from ..utils.globals import load_environment

APPROVAL_POLICIES = ("untrusted", "on-request", "on-failure", "never")
SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Execution engine configuration"""

    # Credentials (per-user keys are resolved at prompt time; this is the fallback)
    openai_api_key: Optional[str] = None

    # Codex runtime
    codex_binary: str = "codex"
    codex_home: str = os.path.join(os.path.expanduser("~"), ".codex")
    default_model: str = "gpt-5-codex"
    stdout_limit: int = 8 * 1024 * 1024  # bytes per JSONL line

    # Permission defaults (used when a session carries no codex config)
    default_sandbox_mode: str = "workspace-write"
    default_approval_policy: str = "on-request"
    default_network_access: bool = False

    # Thread behaviour
    reset_thread_on_new_servers: bool = False
    control_command_template: str = "/approvals {policy}"

    # Database
    database_url: str = "sqlite:///codex_sessions.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables"""
        load_environment()

        return cls(
            openai_api_key=os.getenv("CODEX_ENGINE_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY"),
            codex_binary=os.getenv("CODEX_ENGINE_BINARY", "codex"),
            codex_home=os.getenv("CODEX_HOME") or os.path.join(os.path.expanduser("~"), ".codex"),
            default_model=os.getenv("CODEX_ENGINE_MODEL", "gpt-5-codex"),
            stdout_limit=int(os.getenv("CODEX_ENGINE_STDOUT_LIMIT", str(8 * 1024 * 1024))),
            default_sandbox_mode=os.getenv("CODEX_ENGINE_SANDBOX_MODE", "workspace-write"),
            default_approval_policy=os.getenv("CODEX_ENGINE_APPROVAL_POLICY", "on-request"),
            default_network_access=_env_flag("CODEX_ENGINE_NETWORK_ACCESS", False),
            reset_thread_on_new_servers=_env_flag("CODEX_ENGINE_RESET_THREAD_ON_NEW_SERVERS", False),
            database_url=os.getenv("CODEX_ENGINE_DATABASE_URL", "sqlite:///codex_sessions.db"),
            db_pool_size=int(os.getenv("CODEX_ENGINE_DB_POOL_SIZE", "5")),
            db_max_overflow=int(os.getenv("CODEX_ENGINE_DB_MAX_OVERFLOW", "10")),
            log_level=os.getenv("CODEX_ENGINE_LOG_LEVEL", "INFO"),
            log_dir=os.getenv("CODEX_ENGINE_LOG_DIR"),
        )

    def validate(self) -> None:
        """Validate configuration on startup (fail fast if invalid)"""
        if self.default_approval_policy not in APPROVAL_POLICIES:
            raise ValueError(
                f"default_approval_policy must be one of {', '.join(APPROVAL_POLICIES)}"
            )

        if self.default_sandbox_mode not in SANDBOX_MODES:
            raise ValueError(f"default_sandbox_mode must be one of {', '.join(SANDBOX_MODES)}")

        if not self.codex_home:
            raise ValueError("codex_home is required")

        if "{policy}" not in self.control_command_template:
            raise ValueError("control_command_template must contain '{policy}'")

        if self.stdout_limit < 64 * 1024:
            raise ValueError("stdout_limit must be at least 64KiB")
