import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_PACKAGE = "chat_context_engine"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


def _module_filter(prefix: str | None):
    if not prefix:
        return None
    return lambda record: record["name"].startswith(prefix)


class ConsoleLogConsumer:
    def __init__(self, modules: str | None = None):
        self._modules = modules

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            filter=_module_filter(self._modules),
            format=(
                "<level>{level:<8}</level> | <magenta>{extra[tenant]}</magenta> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
            ),
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = "chat_context.log",
        rotation: str = "10 MB",
        retention: int = 3,
        modules: str | None = None,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._modules = modules

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            filter=_module_filter(self._modules),
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[tenant]} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


class JsonLinesLogConsumer:
    """One JSON object per record, for shipping storage and share events elsewhere."""

    def __init__(self, path: str = "chat_context.jsonl", rotation: str = "10 MB", retention: int = 3):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(self._path, level=level, serialize=True, rotation=self._rotation, retention=self._retention)

    def describe(self, level: str) -> str:
        return f"jsonl ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "jsonl": JsonLinesLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console", "modules": _PACKAGE},
    {"type": "file", "path": "chat_context.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    tenant_id: str = "-",
) -> list[str]:
    """Replace loguru's sinks with the configured consumers.

    ``tenant_id`` becomes the default ``extra[tenant]`` value; code handling a
    specific tenant can override it with ``logger.bind(tenant=...)``.
    Returns a description of each registered consumer.
    """
    logger.remove()
    logger.configure(extra={"tenant": tenant_id})

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []

    for config in consumers:
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
