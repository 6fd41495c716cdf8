# config.py
import os, sys, shlex, logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

import structlog
from dotenv import load_dotenv

load_dotenv()

ROOT = Path(__file__).resolve().parent
DEFAULT_DATA_PATH = ROOT / "servers" / "user_mcp" / "data" / "users.json"
DEFAULT_SERVER_ARGS = ("-m", "servers.user_mcp.server")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime settings for both the host clients and the peer server."""

    openai_api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 1024
    request_timeout: float = 120.0
    user_data_path: Path = DEFAULT_DATA_PATH
    server_command: str = sys.executable
    server_args: Tuple[str, ...] = field(default=DEFAULT_SERVER_ARGS)
    confirm_sampling: bool = True
    debug: bool = False
    log_level: str = "warning"

    @classmethod
    def from_env(cls) -> "Settings":
        args = os.getenv("MCP_SERVER_ARGS")
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            model=os.getenv("MODEL", "gpt-4o-mini"),
            temperature=_env_float("TEMPERATURE", 0.2),
            max_tokens=_env_int("MAX_TOKENS", 1024),
            request_timeout=_env_float("REQUEST_TIMEOUT", 120.0),
            user_data_path=Path(os.getenv("USER_DATA_PATH") or DEFAULT_DATA_PATH),
            server_command=os.getenv("MCP_SERVER_COMMAND") or sys.executable,
            server_args=tuple(shlex.split(args)) if args else DEFAULT_SERVER_ARGS,
            confirm_sampling=_env_bool("CONFIRM_SAMPLING", True),
            debug=_env_bool("DEBUG", False),
            log_level=os.getenv("LOG_LEVEL", "warning"),
        )


def configure_logging(settings: Settings) -> None:
    """Route structlog output to stderr; stdout may be the protocol channel."""
    level_name = "debug" if settings.debug else settings.log_level
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.WARNING
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
