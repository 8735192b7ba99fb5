from __future__ import annotations

from loguru import logger

from micro_x_chat.completions.types import CompletionContext, CompletionItem


class CompletionProvider:
    """Base class for completion sources.

    Subclasses set ``name`` and implement ``get_completions``; the other hooks
    have neutral defaults.
    """

    name: str = "base"

    async def get_completions(self, context: CompletionContext) -> list[CompletionItem]:
        raise NotImplementedError

    def is_applicable(self, context: CompletionContext) -> bool:
        return True

    def get_priority(self, context: CompletionContext) -> int:
        return 0

    def supports_caching(self) -> bool:
        return True

    def cache_ttl(self) -> float | None:
        return None


class ProviderRegistry:
    """Named set of providers with an enabled flag each."""

    def __init__(self) -> None:
        self._providers: list[CompletionProvider] = []
        self._enabled: set[str] = set()

    def register(self, provider: CompletionProvider) -> None:
        self.unregister(provider.name)
        self._providers.append(provider)
        self._enabled.add(provider.name)
        logger.debug(f"Completion provider registered: {provider.name}")

    def unregister(self, name: str) -> bool:
        for index, provider in enumerate(self._providers):
            if provider.name == name:
                del self._providers[index]
                self._enabled.discard(name)
                return True
        return False

    def set_enabled(self, name: str, enabled: bool) -> None:
        if enabled:
            self._enabled.add(name)
        else:
            self._enabled.discard(name)

    def is_enabled(self, name: str) -> bool:
        return name in self._enabled

    def get(self, name: str) -> CompletionProvider | None:
        return next((p for p in self._providers if p.name == name), None)

    def names(self) -> list[str]:
        return [p.name for p in self._providers]

    def applicable(self, context: CompletionContext) -> list[CompletionProvider]:
        """Enabled providers that apply to ``context``, highest priority first."""
        candidates = [p for p in self._providers if p.name in self._enabled and p.is_applicable(context)]
        return sorted(candidates, key=lambda p: p.get_priority(context), reverse=True)
