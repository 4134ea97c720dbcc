"""LoopDesk configuration management.

Loads configuration from .loopdesk/config.yaml with sensible defaults.
All settings can be overridden via environment variables (LOOPDESK_*).

Config locations (in priority order):
1. Explicit path passed to load_config()
2. .loopdesk/config.yaml (project-local)
3. ~/.loopdesk/config.yaml (user-global)
4. Built-in defaults

Core host components never read this module directly; ``HostApp`` takes a
``LoopDeskConfig`` and hands explicit values to each registry.

Thread Safety:
    Uses threading.Lock for thread-safe lazy initialization.
"""

import logging
import os
import threading
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


DEFAULT_IGNORE_DIRS: tuple[str, ...] = (
    ".git",
    ".svn",
    ".hg",
    "node_modules",
    "dist",
    "build",
    "out",
    "__pycache__",
    ".venv",
    "venv",
)


DEFAULT_QUIET_LOGGERS: tuple[str, ...] = (
    "asyncio",
    "watchfiles",
    "uvicorn.access",
    "httpx",
)

@dataclass(slots=True)
class CliConfig:
    """Settings for the CLI execution engine."""

    executable: str = "claude"
    """Executable used when a command is rewritten (slash commands, bare words)."""

    kill_grace_seconds: float = 3.0
    """Delay between SIGTERM and SIGKILL when cancelling."""

    max_history: int = 200
    """Finished executions retained for lookup."""


@dataclass(slots=True)
class WatchConfig:
    """Settings for project file watching."""

    ignore_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_DIRS))
    """Directory names excluded from recursive watches."""

    debounce_ms: int = 100
    """Batching window handed to watchfiles."""


@dataclass(slots=True)
class RateLimitConfig:
    """Settings for per-channel admission control."""

    cleanup_interval_seconds: float = 60.0
    """How often idle rate-limit records are dropped."""

    policies: dict[str, dict[str, int]] = field(default_factory=dict)
    """Per-channel overrides: ``{channel: {window_ms, max_requests}}``."""


@dataclass(slots=True)
class FileConfig:
    """Settings for file reads and path validation."""

    default_max_size: int = 5 * 1024 * 1024
    """Byte limit applied when a read request carries no maxSize."""

    allowed_base_paths: list[str] = field(default_factory=list)
    """When non-empty, every validated path must live under one of these."""


@dataclass(slots=True)
class ServerConfig:
    """Settings for the HTTP/WebSocket bridge."""

    host: str = "127.0.0.1"
    port: int = 8765
    event_queue_size: int = 1000
    """Per-WebSocket buffered events before the consumer is dropped."""


@dataclass(slots=True)
class LoggingConfig:
    """Settings for console and session logging."""

    level: str | int = "WARNING"
    """Console level name or number; ``--debug`` forces DEBUG."""

    persist: bool = False
    """Also write a DEBUG session log under ``directory``."""

    directory: str = ".loopdesk/logs"
    max_sessions: int = 10
    """Session logs kept, newest first."""

    quiet: list[str] = field(default_factory=lambda: list(DEFAULT_QUIET_LOGGERS))
    """Loggers held at WARNING or above even in debug mode."""


@dataclass(slots=True)
class LoopDeskConfig:
    """Root LoopDesk configuration."""

    cli: CliConfig = field(default_factory=CliConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    files: FileConfig = field(default_factory=FileConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS: dict[str, type] = {
    "cli": CliConfig,
    "watch": WatchConfig,
    "rate_limits": RateLimitConfig,
    "files": FileConfig,
    "server": ServerConfig,
    "logging": LoggingConfig,
}


# Global config instance (lazy-loaded, thread-safe)
_config: LoopDeskConfig | None = None
_config_lock = threading.Lock()


def _deep_update(base: dict, updates: dict) -> dict:
    """Recursively update a dict with another dict."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _coerce(value: str) -> Any:
    """Coerce an environment string into bool, int, float, list or str."""
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.isdigit() or (value.startswith("-") and value[1:].isdigit()):
        return int(value)
    try:
        return float(value)
    except ValueError:
        pass
    if "," in value:
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _apply_env_overrides(config_dict: dict, environ: dict[str, str] | None = None) -> dict:
    """Apply environment variable overrides.

    Environment variables follow the pattern LOOPDESK_<SECTION>_<KEY>.
    Section names may contain underscores, so they are matched against the
    known sections first; the remainder must be a field of that section.

    Examples:
        LOOPDESK_CLI_EXECUTABLE=/opt/claude/bin/claude
        LOOPDESK_CLI_KILL_GRACE_SECONDS=5
        LOOPDESK_FILES_ALLOWED_BASE_PATHS=/home/me/work,/srv/projects
    """
    prefix = "LOOPDESK_"
    env = os.environ if environ is None else environ

    for key, value in env.items():
        if not key.startswith(prefix):
            continue

        path_str = key[len(prefix):].lower()
        for section, section_cls in _SECTIONS.items():
            if not path_str.startswith(section + "_"):
                continue
            field_name = path_str[len(section) + 1:]
            known = {f.name for f in fields(section_cls)}
            if field_name in known:
                config_dict.setdefault(section, {})[field_name] = _coerce(value)
            break

    # Env var override for the executable path
    if claude_path := env.get("CLAUDE_CODE_PATH"):
        config_dict.setdefault("cli", {})["executable"] = claude_path

    return config_dict


def _dict_to_config(data: dict) -> LoopDeskConfig:
    """Convert a dict to LoopDeskConfig, ignoring unknown keys."""
    sections: dict[str, Any] = {}
    for name, section_cls in _SECTIONS.items():
        raw = data.get(name) or {}
        known = {f.name for f in fields(section_cls)}
        unknown = set(raw) - known
        if unknown:
            logger.warning("Ignoring unknown %s config keys: %s", name, sorted(unknown))
        sections[name] = section_cls(**{k: v for k, v in raw.items() if k in known})

    watch = sections["watch"]
    if isinstance(watch.ignore_dirs, str):
        watch.ignore_dirs = [watch.ignore_dirs]

    files = sections["files"]
    if isinstance(files.allowed_base_paths, str):
        files.allowed_base_paths = [files.allowed_base_paths]

    log_settings = sections["logging"]
    if isinstance(log_settings.quiet, str):
        log_settings.quiet = [log_settings.quiet]

    return LoopDeskConfig(**sections)


def load_config(path: str | Path | None = None) -> LoopDeskConfig:
    """Load configuration from file with defaults and env overrides.

    Priority (highest to lowest):
    1. Environment variables (LOOPDESK_*, CLAUDE_CODE_PATH)
    2. Explicit path if provided
    3. .loopdesk/config.yaml (project-local)
    4. ~/.loopdesk/config.yaml (user-global)
    5. Built-in defaults

    Args:
        path: Optional explicit config file path.

    Returns:
        Merged LoopDeskConfig instance.
    """
    config_dict: dict[str, Any] = asdict(LoopDeskConfig())

    config_paths = []
    if path:
        config_paths.append(Path(path))
    config_paths.extend([
        Path(".loopdesk/config.yaml"),
        Path.home() / ".loopdesk" / "config.yaml",
    ])

    for config_path in config_paths:
        if config_path.exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Skipping invalid config file %s: %s", config_path, e)
                continue
            if isinstance(file_config, dict):
                _deep_update(config_dict, file_config)
                logger.debug("Loaded config from %s", config_path)
                break  # Use first found config

    config_dict = _apply_env_overrides(config_dict)
    return _dict_to_config(config_dict)


def get_config() -> LoopDeskConfig:
    """Get the current configuration, loading if needed.

    Thread-safe with double-check locking.
    """
    global _config

    # Fast path: already initialized
    if _config is not None:
        return _config

    with _config_lock:
        if _config is None:
            _config = load_config()
        return _config


def reset_config() -> None:
    """Reset the global config (useful for testing)."""
    global _config
    with _config_lock:
        _config = None
