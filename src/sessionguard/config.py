"""
Runtime configuration, read once at startup from a JSON file.

Keys use the camelCase names of the config file; unknown keys are ignored so
the same file can carry settings for other parts of the application.
Relative paths are resolved against the application root, which defaults to
the directory holding the config file.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Tuple

from sessionguard.qr import QR_DIR, default_qr_path
from sessionguard.session import DEFAULT_BROWSER
from sessionguard.supervisor import ReconnectPolicy
from sessionguard.version import VERSION_CACHE_TTL, VERSION_URL

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_URL = "ws://127.0.0.1:8765"


class ConfigError(Exception):
    """The configuration file is missing, unreadable or invalid."""


@dataclass
class QueueSettings:
    """BatchQueue sizing."""

    max_workers: int = 8
    batch_size: int = 10
    messages_per_batch: int = 2


@dataclass
class AppConfig:
    """Settings for the supervisor and its collaborators."""

    app_root: Path = Path(".")
    code_mode: bool = False
    bridge_url: str = DEFAULT_BRIDGE_URL
    auth_dir: Optional[Path] = None
    qr_path: Optional[Path] = None
    version_url: str = VERSION_URL
    version_ttl: float = VERSION_CACHE_TTL
    browser: Tuple[str, str, str] = DEFAULT_BROWSER
    sync_full_history: bool = False
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)

    def __post_init__(self) -> None:
        self.app_root = Path(self.app_root)
        if self.auth_dir is None:
            self.auth_dir = self.app_root / QR_DIR
        if self.qr_path is None:
            self.qr_path = default_qr_path(self.app_root)


def _expect(value: Any, kind, name: str) -> Any:
    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if kind is int and isinstance(value, bool):
        raise ConfigError(f"{name} must be {kind.__name__}")
    if not isinstance(value, kind):
        raise ConfigError(f"{name} must be {kind.__name__}")
    return value


def _path(root: Path, value: Any, name: str) -> Path:
    path = Path(_expect(value, str, name))
    return path if path.is_absolute() else root / path


def parse_config(data: Any, *, base_dir: Path = Path(".")) -> AppConfig:
    """Build an AppConfig from the decoded JSON object."""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a JSON object")
    root = Path(base_dir)
    if "appRoot" in data:
        root = _path(root, data["appRoot"], "appRoot")
    kwargs: dict = {"app_root": root}

    if "codeMode" in data:
        kwargs["code_mode"] = _expect(data["codeMode"], bool, "codeMode")
    if "bridgeUrl" in data:
        kwargs["bridge_url"] = _expect(data["bridgeUrl"], str, "bridgeUrl")
    if "authDir" in data:
        kwargs["auth_dir"] = _path(root, data["authDir"], "authDir")
    if "qrPath" in data:
        kwargs["qr_path"] = _path(root, data["qrPath"], "qrPath")
    if "versionUrl" in data:
        kwargs["version_url"] = _expect(data["versionUrl"], str, "versionUrl")
    if "versionTtl" in data:
        kwargs["version_ttl"] = _expect(data["versionTtl"], float, "versionTtl")
    if "syncFullHistory" in data:
        kwargs["sync_full_history"] = _expect(
            data["syncFullHistory"], bool, "syncFullHistory"
        )
    if "logLevel" in data:
        level = _expect(data["logLevel"], str, "logLevel").upper()
        if level not in logging.getLevelNamesMapping():
            raise ConfigError(f"logLevel {data['logLevel']!r} is not a logging level")
        kwargs["log_level"] = level
    if "browser" in data:
        browser = _expect(data["browser"], list, "browser")
        if len(browser) != 3 or not all(isinstance(b, str) for b in browser):
            raise ConfigError("browser must be a list of three strings")
        kwargs["browser"] = tuple(browser)

    queue = _expect(data.get("queue", {}), dict, "queue")
    kwargs["queue"] = QueueSettings(
        max_workers=_expect(queue.get("maxWorkers", 8), int, "queue.maxWorkers"),
        batch_size=_expect(queue.get("batchSize", 10), int, "queue.batchSize"),
        messages_per_batch=_expect(
            queue.get("messagesPerBatch", 2), int, "queue.messagesPerBatch"
        ),
    )

    reconnect = _expect(data.get("reconnect", {}), dict, "reconnect")
    max_attempts = reconnect.get("maxAttempts")
    kwargs["reconnect"] = ReconnectPolicy(
        delay=_expect(reconnect.get("delay", 0.0), float, "reconnect.delay"),
        backoff=_expect(reconnect.get("backoff", 1.0), float, "reconnect.backoff"),
        max_delay=_expect(reconnect.get("maxDelay", 60.0), float, "reconnect.maxDelay"),
        max_attempts=(
            None
            if max_attempts is None
            else _expect(max_attempts, int, "reconnect.maxAttempts")
        ),
    )
    return AppConfig(**kwargs)


def load_config(path: Path) -> AppConfig:
    """Read and validate the JSON config file at path."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot load config {path}: {e}") from e
    config = parse_config(data, base_dir=path.resolve().parent)
    logger.debug("config loaded from %s", path)
    return config
