"""Session configuration loaded from environment variables.

All settings have sensible defaults. Override via DESK_* env vars or
a YAML file (see ``yaml_config``).
"""
from __future__ import annotations

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DESK_HOME = Path.home() / ".deskagent"


def _default_worker_command() -> list[str]:
    return [sys.executable, "-m", "deskagent.worker"]


@dataclass
class SessionConfig:
    """Worker session, persistence and capability settings."""

    # Worker process
    worker_command: list[str] = field(default_factory=_default_worker_command)
    worker_cwd: str | None = None
    startup_timeout_seconds: float = 15.0
    # How long an interrupted query may keep running before the
    # worker is killed and the session version bumped.
    interrupt_grace_seconds: float = 5.0

    # Wire protocol
    max_line_bytes: int = 16 * 1024 * 1024
    event_queue_size: int = 5000

    # Persistence
    db_path: str = str(DESK_HOME / "history.db")

    # Capabilities
    allowed_root_dir: str = str(Path.home() / "workspace")
    max_file_size_mb: float = 10.0
    shell_timeout_seconds: float = 10.0
    tools_dir: str | None = None
    agents_dir: str | None = None

    # Model
    model_id: str | None = None
    max_turns: int = 10

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> SessionConfig:
        """Load configuration from DESK_* environment variables."""
        desk_vars = {
            k: v for k, v in os.environ.items() if k.startswith("DESK_")
        }
        if desk_vars:
            logger.info(
                "SessionConfig.from_env: DESK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(desk_vars.items())),
            )
        else:
            logger.debug("SessionConfig.from_env: no DESK_* env vars set, using defaults")

        command = os.getenv("DESK_WORKER_COMMAND")
        config = cls(
            worker_command=(
                shlex.split(command) if command else _default_worker_command()
            ),
            worker_cwd=os.getenv("DESK_WORKER_CWD") or None,
            startup_timeout_seconds=float(os.getenv(
                "DESK_STARTUP_TIMEOUT", str(cls.startup_timeout_seconds)
            )),
            interrupt_grace_seconds=float(os.getenv(
                "DESK_INTERRUPT_GRACE", str(cls.interrupt_grace_seconds)
            )),
            max_line_bytes=int(os.getenv(
                "DESK_MAX_LINE_BYTES", str(cls.max_line_bytes)
            )),
            event_queue_size=int(os.getenv(
                "DESK_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            db_path=os.getenv("DESK_DB_PATH", cls.db_path),
            allowed_root_dir=os.getenv(
                "DESK_ALLOWED_ROOT_DIR", cls.allowed_root_dir
            ),
            max_file_size_mb=float(os.getenv(
                "DESK_MAX_FILE_SIZE_MB", str(cls.max_file_size_mb)
            )),
            shell_timeout_seconds=float(os.getenv(
                "DESK_SHELL_TIMEOUT", str(cls.shell_timeout_seconds)
            )),
            tools_dir=os.getenv("DESK_TOOLS_DIR") or None,
            agents_dir=os.getenv("DESK_AGENTS_DIR") or None,
            model_id=os.getenv("DESK_MODEL") or None,
            max_turns=int(os.getenv("DESK_MAX_TURNS", str(cls.max_turns))),
            log_level=os.getenv("DESK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "SessionConfig.from_env: worker=%s db=%s root=%s log_level=%s",
            " ".join(config.worker_command), config.db_path,
            config.allowed_root_dir, config.log_level,
        )
        return config
