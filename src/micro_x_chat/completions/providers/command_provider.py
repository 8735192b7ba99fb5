from __future__ import annotations

import os
from enum import Enum

from loguru import logger

from micro_x_chat.completions.providers.base import CompletionProvider
from micro_x_chat.completions.types import CompletionContext, CompletionItem

SHELL_BUILTINS = (
    "cd", "pwd", "ls", "echo", "export", "set", "unset", "alias", "unalias", "history",
    "jobs", "bg", "fg", "kill", "wait", "trap", "exit", "source", ".", "test", "true",
    "false", "read", "printf", "shift", "return", "break", "continue", "exec", "eval",
    "ulimit", "umask", "type", "which", "command", "builtin", "help",
)

COMMON_COMMANDS: dict[str, str] = {
    "ls": "List directory contents",
    "cd": "Change directory",
    "pwd": "Print working directory",
    "cat": "Display file contents",
    "grep": "Search text patterns",
    "find": "Find files and directories",
    "git": "Version control system",
    "cargo": "Rust package manager",
    "npm": "Node package manager",
    "docker": "Container platform",
    "vim": "Text editor",
    "nano": "Text editor",
    "code": "VS Code editor",
    "curl": "Transfer data from servers",
    "wget": "Download files",
    "tar": "Archive files",
    "zip": "Compress files",
    "unzip": "Decompress files",
    "ps": "List running processes",
    "top": "Display running processes",
    "kill": "Terminate processes",
    "ssh": "Secure shell connection",
    "scp": "Secure copy",
    "rsync": "Synchronize files",
}

GIT_COMMANDS = (
    "add", "branch", "checkout", "clone", "commit", "diff", "fetch", "init", "log", "merge",
    "pull", "push", "rebase", "reset", "status", "tag", "rm", "mv", "show", "config",
    "remote", "stash", "cherry-pick", "revert", "bisect", "blame", "grep", "clean", "gc",
    "reflog", "archive",
)

GIT_DESCRIPTIONS = {
    "add": "Add files to staging area",
    "commit": "Create a new commit",
    "push": "Upload changes to remote",
    "pull": "Download changes from remote",
    "status": "Show working tree status",
    "log": "Show commit history",
    "diff": "Show changes between commits",
    "branch": "List, create, or delete branches",
    "checkout": "Switch branches or restore files",
    "merge": "Merge branches",
    "rebase": "Reapply commits on top of another base",
}

CARGO_COMMANDS = (
    "build", "run", "test", "check", "clean", "doc", "new", "init", "add", "remove",
    "update", "search", "publish", "install", "uninstall", "bench", "fmt", "clippy", "fix",
    "tree", "audit", "outdated", "expand", "watch", "nextest",
)

CARGO_DESCRIPTIONS = {
    "build": "Compile the current package",
    "run": "Run the current package",
    "test": "Run tests",
    "check": "Check without producing executables",
    "clean": "Remove build artifacts",
    "doc": "Build documentation",
    "new": "Create a new cargo package",
    "add": "Add dependencies",
    "update": "Update dependencies",
    "clippy": "Run the Clippy linter",
    "fmt": "Format source code",
}

NPM_COMMANDS = (
    "install", "uninstall", "update", "run", "start", "test", "build", "dev", "serve",
    "lint", "format", "audit", "fund", "version", "publish", "pack", "link", "unlink",
    "config", "cache", "init", "create", "exec", "explore", "doctor",
)

NPM_DESCRIPTIONS = {
    "install": "Install dependencies",
    "uninstall": "Remove dependencies",
    "run": "Run package scripts",
    "start": "Start the application",
    "test": "Run tests",
    "build": "Build the application",
    "dev": "Start development server",
    "update": "Update dependencies",
    "audit": "Check for vulnerabilities",
}

COMMON_FLAGS = (
    ("--help", "Show help information"),
    ("--version", "Show version information"),
    ("--verbose", "Enable verbose output"),
    ("--quiet", "Reduce output"),
    ("--dry-run", "Show what would be done"),
)

COMMAND_FLAGS: dict[str, tuple[tuple[str, str], ...]] = {
    "git": (
        ("--all", "Include all refs"),
        ("--force", "Force the operation"),
        ("--no-verify", "Skip pre-commit hooks"),
        ("--amend", "Amend the previous commit"),
    ),
    "cargo": (
        ("--release", "Build in release mode"),
        ("--target", "Specify target triple"),
        ("--features", "Enable specific features"),
        ("--no-default-features", "Disable default features"),
        ("--workspace", "Apply to entire workspace"),
    ),
    "npm": (
        ("--save", "Save to dependencies"),
        ("--save-dev", "Save to devDependencies"),
        ("--global", "Install globally"),
        ("--production", "Skip devDependencies"),
    ),
}


class CommandContext(str, Enum):
    ROOT = "root"
    GIT = "git"
    CARGO = "cargo"
    NPM = "npm"
    DOCKER = "docker"
    KUBERNETES = "kubernetes"
    SYSTEM = "system"


_LEAD_CONTEXTS = {
    "git": CommandContext.GIT,
    "cargo": CommandContext.CARGO,
    "npm": CommandContext.NPM,
    "yarn": CommandContext.NPM,
    "pnpm": CommandContext.NPM,
    "docker": CommandContext.DOCKER,
    "kubectl": CommandContext.KUBERNETES,
}


def load_path_commands(path: str | None = None) -> list[str]:
    """Executable names found on PATH, skipping dotted and hidden names."""
    commands: set[str] = set()
    for directory in (path if path is not None else os.environ.get("PATH", "")).split(os.pathsep):
        if not directory:
            continue
        try:
            with os.scandir(directory) as entries:
                for entry in entries:
                    if "." in entry.name:
                        continue
                    try:
                        if entry.is_file():
                            commands.add(entry.name)
                    except OSError:
                        continue
        except OSError:
            continue
    return sorted(commands)


def detect_command_context(context: CompletionContext) -> CommandContext:
    words = context.words()
    # Still typing the first word
    if not words or (len(words) == 1 and not context.before_cursor[-1:].isspace()):
        return CommandContext.ROOT
    return _LEAD_CONTEXTS.get(words[0], CommandContext.SYSTEM)


class CommandProvider(CompletionProvider):
    name = "command"

    def __init__(self, *, system_commands: list[str] | None = None, context_aware: bool = True):
        self._system_commands = system_commands if system_commands is not None else load_path_commands()
        self._context_aware = context_aware

    async def get_completions(self, context: CompletionContext) -> list[CompletionItem]:
        word = context.current_word()
        logger.debug(f"Command completion for {word!r}")

        if word.startswith("-"):
            words = context.words()
            return self.complete_flags(words[0] if words else "", word)

        if not self._context_aware:
            return self.complete_root(word)

        kind = detect_command_context(context)
        if kind == CommandContext.ROOT:
            return self.complete_root(word)
        if kind == CommandContext.GIT:
            return _subcommands(GIT_COMMANDS, GIT_DESCRIPTIONS, word, "git", "Git subcommand")
        if kind == CommandContext.CARGO:
            return _subcommands(CARGO_COMMANDS, CARGO_DESCRIPTIONS, word, "cargo", "Cargo subcommand")
        if kind == CommandContext.NPM:
            return _subcommands(NPM_COMMANDS, NPM_DESCRIPTIONS, word, "npm", "NPM subcommand")
        return []

    def complete_root(self, prefix: str) -> list[CompletionItem]:
        items = [
            CompletionItem(cmd, cmd, "shell", description="Shell builtin command", score=0.9)
            for cmd in SHELL_BUILTINS
            if cmd.startswith(prefix)
        ]
        items.extend(
            CompletionItem(cmd, cmd, "system", description=description, score=0.8)
            for cmd, description in COMMON_COMMANDS.items()
            if cmd.startswith(prefix)
        )
        seen = {item.title for item in items}
        for cmd in self._system_commands:
            if cmd.startswith(prefix) and cmd not in seen:
                items.append(CompletionItem(cmd, cmd, "system", description="System command", score=0.5))
                seen.add(cmd)
        return items

    def complete_flags(self, command: str, prefix: str) -> list[CompletionItem]:
        items = [
            CompletionItem(flag, flag, "flag", description=description, score=0.7)
            for flag, description in COMMON_FLAGS
            if flag.startswith(prefix)
        ]
        specific_key = "npm" if _LEAD_CONTEXTS.get(command) == CommandContext.NPM else command
        items.extend(
            CompletionItem(flag, flag, "flag", description=description, score=0.8)
            for flag, description in COMMAND_FLAGS.get(specific_key, ())
            if flag.startswith(prefix)
        )
        return items

    def is_applicable(self, context: CompletionContext) -> bool:
        return not context.words() or not context.prefix().strip() or context.command_context is not None

    def get_priority(self, context: CompletionContext) -> int:
        return 15 if context.command_context is not None else 5


def _subcommands(
    commands: tuple[str, ...],
    descriptions: dict[str, str],
    prefix: str,
    provider: str,
    fallback: str,
) -> list[CompletionItem]:
    return [
        CompletionItem(cmd, cmd, provider, description=descriptions.get(cmd, fallback), score=0.9)
        for cmd in commands
        if cmd.startswith(prefix)
    ]
