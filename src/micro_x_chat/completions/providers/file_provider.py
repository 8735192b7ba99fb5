from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

from loguru import logger

from micro_x_chat.completions.providers.base import CompletionProvider
from micro_x_chat.completions.types import CompletionContext, CompletionItem

IGNORED_NAMES = frozenset({".git", ".DS_Store", "node_modules", "target", ".cache", "__pycache__"})

COMMON_ENV_VARS: tuple[tuple[str, str], ...] = (
    ("HOME", "User home directory"),
    ("PATH", "Executable search path"),
    ("PWD", "Current working directory"),
    ("USER", "Current user name"),
    ("SHELL", "Current shell"),
    ("TEMP", "Temporary directory"),
    ("TMP", "Temporary directory"),
    ("CARGO_HOME", "Cargo home directory"),
    ("RUST_LOG", "Rust logging configuration"),
)

_SOURCE_EXTENSIONS = {"rs", "go", "py", "js", "ts", "md", "txt"}
_CONFIG_EXTENSIONS = {"json", "yaml", "toml", "cfg"}


def split_path_token(token: str) -> tuple[str, str]:
    """Split ``src/ma`` into (``src/``, ``ma``); a bare name completes in ``.``."""
    cut = max(token.rfind("/"), token.rfind("\\"))
    if cut < 0:
        return ".", token
    return token[: cut + 1], token[cut + 1 :]


class FileProvider(CompletionProvider):
    name = "file"

    def __init__(
        self,
        *,
        working_dir: str | None = None,
        show_hidden: bool = False,
        include_directories: bool = True,
        max_results: int = 50,
    ):
        self._working_dir = working_dir
        self._show_hidden = show_hidden
        self._include_directories = include_directories
        self._max_results = max_results

    def _base_directory(self, context: CompletionContext) -> Path:
        return Path(context.working_dir or self._working_dir or os.getcwd())

    async def get_completions(self, context: CompletionContext) -> list[CompletionItem]:
        token = context.current_token()
        if token.startswith("$"):
            return self.complete_environment_variables(token)

        dir_part, partial = split_path_token(token)
        base_dir = self._base_directory(context)
        logger.debug(f"File completion: base={base_dir}, dir={dir_part}, prefix={partial!r}")
        return await asyncio.to_thread(self._complete_directory, dir_part, partial, base_dir)

    def _complete_directory(self, dir_part: str, partial: str, base_dir: Path) -> list[CompletionItem]:
        search_path = Path(os.path.expanduser(dir_part))
        if not search_path.is_absolute():
            search_path = base_dir / search_path
        if not search_path.is_dir():
            logger.debug(f"Directory does not exist: {search_path}")
            return []

        lowered = partial.lower()
        hide_dotfiles = not self._show_hidden and not partial.startswith(".")
        items: list[CompletionItem] = []
        with os.scandir(search_path) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                filename = entry.name
                if filename in IGNORED_NAMES and not self._show_hidden:
                    continue
                if hide_dotfiles and filename.startswith("."):
                    continue
                if lowered and not filename.lower().startswith(lowered):
                    continue
                try:
                    is_dir = entry.is_dir()
                    modified = entry.stat().st_mtime
                except OSError:
                    continue
                if is_dir and not self._include_directories:
                    continue

                extension = Path(filename).suffix[1:] if not is_dir else ""
                if is_dir:
                    description = "Directory"
                elif extension:
                    description = f"{extension.upper()} file"
                else:
                    description = "File"

                items.append(
                    CompletionItem(
                        title=f"{filename}/" if is_dir else filename,
                        value=filename if dir_part == "." else f"{dir_part}{filename}",
                        provider="file",
                        description=description,
                        score=self.score_file(filename, partial, is_dir=is_dir, modified=modified),
                    )
                )
                if len(items) >= self._max_results:
                    break

        items.sort(key=lambda item: (-item.score, item.title))
        return items

    def score_file(self, filename: str, prefix: str, *, is_dir: bool, modified: float | None = None) -> float:
        score = 1.0
        if filename.lower().startswith(prefix.lower()):
            score += 0.5
        if is_dir and self._include_directories:
            score += 0.1
        if modified is not None:
            age = time.time() - modified
            if age < 3600:
                score += 0.2
            elif age < 86400:
                score += 0.1
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename.lstrip(".") else ""
        if extension in _SOURCE_EXTENSIONS:
            score += 0.1
        elif extension in _CONFIG_EXTENSIONS:
            score += 0.05
        if len(filename) > 50:
            score -= 0.1
        if filename.startswith(".") and not self._show_hidden:
            score -= 0.2
        return max(score, 0.1)

    def complete_environment_variables(self, token: str) -> list[CompletionItem]:
        if not token.startswith("$"):
            return []
        wanted = token[1:].lower()
        items = []
        for var_name, description in COMMON_ENV_VARS:
            if not var_name.lower().startswith(wanted):
                continue
            value = os.environ.get(var_name)
            if value is None:
                continue
            items.append(
                CompletionItem(
                    title=f"${var_name}",
                    value=f"${var_name}",
                    provider="env",
                    description=f"{description}: {value}",
                    score=0.8,
                )
            )
        return items

    def is_applicable(self, context: CompletionContext) -> bool:
        token = context.current_token()
        return "/" in token or "\\" in token or token.startswith((".", "$", "~"))

    def get_priority(self, context: CompletionContext) -> int:
        return 10 if self.is_applicable(context) else 2
