from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from micro_x_chat.completions.cache import CompletionCache
from micro_x_chat.completions.fuzzy import advanced_fuzzy_score
from micro_x_chat.completions.providers.base import CompletionProvider, ProviderRegistry
from micro_x_chat.completions.providers.code_provider import CodeProvider
from micro_x_chat.completions.providers.command_provider import CommandProvider
from micro_x_chat.completions.providers.file_provider import FileProvider
from micro_x_chat.completions.providers.history_provider import HistoryProvider
from micro_x_chat.completions.types import MAX_COMPLETIONS, CompletionContext, CompletionItem, ProviderPriority
from micro_x_chat.memory.session_manager import SessionManager


@dataclass(frozen=True)
class CompletionStats:
    provider_count: int
    enabled_providers: int
    cache_size: int
    cache_hit_rate: float


def cache_key(context: CompletionContext) -> str:
    return f"{context.text}:{context.cursor_pos}:{context.working_dir or ''}:{context.command_context or ''}"


def deduplicate(items: list[CompletionItem]) -> list[CompletionItem]:
    """Drop repeated (title, value) pairs, keeping the first occurrence."""
    seen: set[str] = set()
    unique = []
    for item in items:
        if item.dedup_key not in seen:
            seen.add(item.dedup_key)
            unique.append(item)
    return unique


class CompletionEngine:
    """Fans a completion request out to the registered providers.

    Providers are consulted in priority order, results are deduplicated and
    cached per input state, then fuzzy-filtered against the word under the
    cursor.
    """

    def __init__(
        self,
        *,
        cache: CompletionCache | None = None,
        min_query_length: int = 1,
        fuzzy_threshold: float = 0.3,
    ):
        self._registry = ProviderRegistry()
        self._priorities: dict[str, ProviderPriority] = {}
        self._cache = cache if cache is not None else CompletionCache()
        self._min_query_length = min_query_length
        self._fuzzy_threshold = fuzzy_threshold

    @property
    def cache(self) -> CompletionCache:
        return self._cache

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def register_provider(
        self,
        provider: CompletionProvider,
        priority: ProviderPriority = ProviderPriority.MEDIUM,
    ) -> None:
        logger.debug(f"Registering completion provider {provider.name} with priority {priority.name}")
        self._registry.register(provider)
        self._priorities[provider.name] = priority

    def unregister_provider(self, name: str) -> bool:
        self._priorities.pop(name, None)
        return self._registry.unregister(name)

    def set_provider_enabled(self, name: str, enabled: bool) -> None:
        if self._registry.get(name) is None:
            return
        self._registry.set_enabled(name, enabled)
        logger.debug(f"Completion provider {name} enabled={enabled}")

    def _ordered_providers(self) -> list[CompletionProvider]:
        # Stable sort: equal priorities keep registration order.
        providers = [self._registry.get(name) for name in self._registry.names()]
        return sorted(providers, key=lambda p: self._priorities[p.name], reverse=True)

    def provider_names(self) -> list[str]:
        return [p.name for p in self._ordered_providers()]

    def set_min_query_length(self, length: int) -> None:
        self._min_query_length = max(0, length)

    def set_fuzzy_threshold(self, threshold: float) -> None:
        self._fuzzy_threshold = min(max(threshold, 0.0), 1.0)

    async def get_completions(self, context: CompletionContext) -> list[CompletionItem]:
        query = context.current_word()
        if len(query) < self._min_query_length:
            return []

        key = cache_key(context)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Found {len(cached)} cached completions")
            return self.filter_and_rank(cached, query)

        collected: list[CompletionItem] = []
        cache_ttls: list[float] = []
        for provider in self._ordered_providers():
            if not self._registry.is_enabled(provider.name):
                continue
            try:
                items = await provider.get_completions(context)
            except Exception as ex:
                logger.warning(f"Completion provider {provider.name} failed: {ex}")
                continue
            logger.debug(f"Completion provider {provider.name} returned {len(items)} item(s)")
            collected.extend(items)
            ttl = provider.cache_ttl()
            if ttl is not None:
                cache_ttls.append(ttl)

        unique = deduplicate(collected)
        self._cache.insert(key, unique, ttl=min(cache_ttls) if cache_ttls else None)
        return self.filter_and_rank(unique, query)

    async def filter_completions(self, context: CompletionContext, query: str) -> list[CompletionItem]:
        """Re-rank the cached candidates for ``context`` against a new query."""
        cached = self._cache.get(cache_key(context))
        if cached:
            return self.filter_and_rank(cached, query)
        return await self.get_completions(context)

    def filter_and_rank(self, items: list[CompletionItem], query: str) -> list[CompletionItem]:
        if not query:
            return list(items[:MAX_COMPLETIONS])

        scored: list[tuple[CompletionItem, float]] = []
        for item in items:
            if item.title.startswith(query) or item.value.startswith(query):
                scored.append((item, 1.0))
                continue
            score = max(advanced_fuzzy_score(item.title, query), advanced_fuzzy_score(item.value, query))
            if score >= self._fuzzy_threshold:
                scored.append((item, score))

        scored.sort(key=lambda pair: (-pair[1], -pair[0].score, pair[0].title))
        return [item for item, _ in scored[:MAX_COMPLETIONS]]

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_stats(self) -> CompletionStats:
        return CompletionStats(
            provider_count=len(self._registry.names()),
            enabled_providers=sum(1 for name in self._registry.names() if self._registry.is_enabled(name)),
            cache_size=len(self._cache),
            cache_hit_rate=self._cache.hit_rate(),
        )


def default_engine(
    session_manager: SessionManager | None = None,
    *,
    working_dir: str | None = None,
) -> CompletionEngine:
    """Engine with the file, command, code and history providers registered."""
    engine = CompletionEngine()
    engine.register_provider(FileProvider(working_dir=working_dir), ProviderPriority.HIGH)
    engine.register_provider(CommandProvider(), ProviderPriority.HIGH)
    engine.register_provider(CodeProvider(), ProviderPriority.MEDIUM)
    engine.register_provider(HistoryProvider(session_manager), ProviderPriority.LOW)
    return engine
