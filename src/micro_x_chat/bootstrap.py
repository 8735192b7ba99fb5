from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from micro_x_chat.app_config import AppConfig
from micro_x_chat.completions import CompletionEngine, default_engine
from micro_x_chat.conversation import ConversationManager
from micro_x_chat.events import EventBus
from micro_x_chat.logging_config import setup_logging
from micro_x_chat.memory import SessionManager
from micro_x_chat.provider import LLMProvider, create_provider


@dataclass
class AppRuntime:
    config: AppConfig
    provider: LLMProvider
    bus: EventBus
    session_manager: SessionManager
    conversations: ConversationManager
    completions: CompletionEngine
    log_descriptions: list[str]


def bootstrap_runtime(
    config: AppConfig,
    *,
    quiet: bool = False,
    configure_logging: bool = True,
    transport=None,
    sleep=None,
) -> AppRuntime:
    """Build every long-lived collaborator from ``config``.

    ``transport`` and ``sleep`` are handed to the provider driver; tests use
    them to stub the network and the retry clock.
    """
    data_dir = Path(config.data_dir)
    if not data_dir.is_absolute():
        data_dir = Path.cwd() / data_dir

    log_descriptions: list[str] = []
    if configure_logging:
        log_descriptions = setup_logging(
            level=config.log_level,
            consumers=config.log_consumers,
            quiet=quiet,
            base_dir=data_dir,
        )

    provider = create_provider(
        config.to_provider_config(),
        config.client_options(),
        transport=transport,
        sleep=sleep,
    )

    bus = EventBus()
    session_manager = SessionManager.open(data_dir, foreign_keys=config.foreign_keys, bus=bus)
    conversations = ConversationManager(session_manager, bus)
    completions = default_engine(session_manager)

    logger.info(f"Runtime ready: provider={provider.name}, model={provider.model}, data_dir={data_dir}")
    return AppRuntime(
        config=config,
        provider=provider,
        bus=bus,
        session_manager=session_manager,
        conversations=conversations,
        completions=completions,
        log_descriptions=log_descriptions,
    )
