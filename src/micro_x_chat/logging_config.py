import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

DEFAULT_LOG_FILE = "micro_x_chat.log"

CONSOLE_FORMAT = "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def sink_options(self) -> dict[str, Any]: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    """Colored console output on stderr (default) or stdout."""

    def __init__(self, stream: str = "stderr"):
        if stream not in ("stderr", "stdout"):
            raise ValueError(f"Unsupported console stream: {stream!r}")
        self._stream = stream

    def sink_options(self) -> dict[str, Any]:
        return {
            "sink": sys.stdout if self._stream == "stdout" else sys.stderr,
            "format": CONSOLE_FORMAT,
        }

    def describe(self, level: str) -> str:
        return f"console ({self._stream}, {level})"


class FileLogConsumer:
    """Rotating plain-text log file. Relative paths resolve against ``base_dir``."""

    def __init__(
        self,
        path: str = DEFAULT_LOG_FILE,
        rotation: str = "10 MB",
        retention: int = 3,
        base_dir: str | Path | None = None,
    ):
        log_path = Path(path)
        if base_dir is not None and not log_path.is_absolute():
            log_path = Path(base_dir) / log_path
        self._path = log_path
        self._rotation = rotation
        self._retention = retention

    def sink_options(self) -> dict[str, Any]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return {
            "sink": str(self._path),
            "format": FILE_FORMAT,
            "rotation": self._rotation,
            "retention": self._retention,
            "encoding": "utf-8",
        }

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level}, rotation {self._rotation})"


def default_consumers(*, quiet: bool = False) -> list[dict[str, Any]]:
    """Console plus rotating file; ``quiet`` keeps only the file sink."""
    if quiet:
        return [{"type": "file"}]
    return [{"type": "console"}, {"type": "file"}]


def build_consumer(spec: dict[str, Any], base_dir: str | Path | None = None) -> LogConsumer | None:
    kind = spec.get("type", "")
    options = {k: v for k, v in spec.items() if k not in ("type", "level")}
    if kind == "console":
        return ConsoleLogConsumer(**options)
    if kind == "file":
        return FileLogConsumer(base_dir=base_dir, **options)
    return None


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    *,
    quiet: bool = False,
    base_dir: str | Path | None = None,
) -> list[str]:
    """Replace every loguru sink with the configured consumers.

    Each consumer spec is a dict with a ``type`` (``console`` or ``file``), an
    optional ``level`` and the consumer's own options. Returns one description
    per registered consumer, for the startup banner.
    """
    logger.remove()
    default_level = level.upper()

    specs = default_consumers(quiet=quiet) if consumers is None else list(consumers)
    if quiet:
        specs = [spec for spec in specs if spec.get("type") != "console"]

    descriptions: list[str] = []
    for spec in specs:
        consumer = build_consumer(spec, base_dir)
        if consumer is None:
            logger.warning(f"Unknown log consumer type: {spec.get('type')!r}")
            continue
        sink_level = str(spec.get("level", default_level)).upper()
        logger.add(level=sink_level, **consumer.sink_options())
        descriptions.append(consumer.describe(sink_level))

    return descriptions
