import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

# Records carry the session they belong to; unbound records show "-".
_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> "
    "<magenta>[{extra[session_id]}]</magenta> <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[session_id]} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, colorize: bool | None = None):
        self._colorize = colorize

    def register(self, level: str) -> None:
        logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, colorize=self._colorize)

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    """Rotating log file; ``serialize`` writes one JSON record per line."""

    def __init__(
        self,
        path: str = "worker.log",
        rotation: str = "10 MB",
        retention: int = 3,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        kind = "json" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "file", "path": "worker.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's default sink with the configured consumers.

    Returns a description of each registered consumer; unknown types are skipped.
    """
    logger.remove()
    logger.configure(extra={"session_id": "-"})

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = config.get("level", level)
        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions


def bind_session(session_id: str) -> None:
    """Tag every later record with the worker's session id."""
    logger.configure(extra={"session_id": session_id})
