from micro_x_chat.completions.cache import CompletionCache
from micro_x_chat.completions.engine import CompletionEngine, default_engine
from micro_x_chat.completions.types import MAX_COMPLETIONS, CompletionContext, CompletionItem, ProviderPriority

__all__ = [
    "MAX_COMPLETIONS",
    "CompletionCache",
    "CompletionContext",
    "CompletionEngine",
    "CompletionItem",
    "ProviderPriority",
    "default_engine",
]
