"""Process bootstrap: logging, wiring, polling loop."""

import asyncio
import logging
import sys
from typing import Any, Dict

import structlog
from telegram.ext import Application

from . import __version__
from .agent.agent import Agent
from .agent.loop import ToolLoop
from .bot.delivery import TelegramDelivery
from .bot.media import MediaExtractor, telegram_file_fetcher
from .bot.orchestrator import MessageOrchestrator
from .config.settings import Settings
from .conversation.repository import TurnRepository
from .exceptions import ConfigurationError
from .llm.embeddings import EmbeddingProvider
from .llm.factory import create_reasoning_engine
from .llm.usage import UsageRecorder
from .memory.compaction import CompactionEngine
from .memory.dedup import PatternDeduplicator
from .memory.extractor import PatternExtractor
from .memory.retrieval import PatternRetriever
from .memory.store import PatternStore
from .storage.database import DatabaseManager
from .storage.locks import AdvisoryLock
from .tools.executor import ToolExecutor
from .tools.memory_search import SearchMemoryTool
from .tools.registry import ToolRegistry
from .tools.weight import LogWeightTool, WeightHistoryTool

logger = structlog.get_logger()


def setup_logging(debug: bool = False) -> None:
    """Configure structlog over stdlib logging."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # httpx logs every Telegram poll at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_components(settings: Settings, db_manager: DatabaseManager) -> Dict[str, Any]:
    """Construct every collaborator once and wire them together."""
    usage = UsageRecorder(db_manager)
    engine = create_reasoning_engine(settings)
    embedder = EmbeddingProvider(
        api_key=settings.openai_api_key_str,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        usage_recorder=usage,
    )

    turns = TurnRepository(db_manager)
    store = PatternStore(db_manager, embedding_model=settings.embedding_model)
    deduplicator = PatternDeduplicator(
        store,
        embedder,
        numeric_epsilon_kg=settings.numeric_fact_epsilon_kg,
        implicit_signal_weight=settings.implicit_signal_weight,
    )
    extractor = PatternExtractor(
        engine,
        usage_recorder=usage,
        max_new_patterns=settings.max_new_patterns_per_compaction,
    )
    compaction = CompactionEngine(
        turns,
        store,
        deduplicator,
        extractor,
        AdvisoryLock(db_manager),
        token_budget=settings.compaction_token_budget,
        interval_hours=settings.compaction_interval_hours,
        min_turns_for_time=settings.min_turns_for_time_compaction,
        min_turns_for_force=settings.min_turns_for_force_compaction,
    )

    registry = ToolRegistry()
    registry.register(LogWeightTool(db_manager, timezone=settings.timezone))
    registry.register(WeightHistoryTool(db_manager, timezone=settings.timezone))
    registry.register(SearchMemoryTool(store))

    loop = ToolLoop(
        engine,
        ToolExecutor(registry),
        turns=turns,
        usage_recorder=usage,
        max_tool_calls=settings.max_tool_calls,
        timeout_seconds=settings.tool_loop_timeout_seconds,
    )
    agent = Agent(
        turns,
        PatternRetriever.from_settings(store, embedder, settings),
        loop,
        compaction=compaction,
        timezone=settings.timezone,
    )
    return {
        "agent": agent,
        "compaction": compaction,
        "store": store,
        "turns": turns,
        "usage": usage,
    }


async def run(settings: Settings) -> None:
    """Run the bot until interrupted."""
    token = settings.telegram_bot_token_str
    if not token:
        raise ConfigurationError("TELEGRAM_BOT_TOKEN is required")

    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize()
    components = build_components(settings, db_manager)

    app = Application.builder().token(token).build()
    orchestrator = MessageOrchestrator(
        settings,
        agent=components["agent"],
        compaction=components["compaction"],
        delivery=TelegramDelivery(app.bot),
        media=MediaExtractor(
            telegram_file_fetcher(app.bot),
            api_key=settings.openai_api_key_str,
            pdf_model=settings.openai_chat_model,
            usage_recorder=components["usage"],
        ),
    )
    orchestrator.register_handlers(app)

    logger.info("Starting memobot", version=__version__, provider=settings.llm_provider)
    async with app:
        await app.bot.set_my_commands(await orchestrator.get_bot_commands())
        await app.start()
        await app.updater.start_polling(allowed_updates=["message", "callback_query"])
        try:
            await asyncio.Event().wait()
        finally:
            await app.updater.stop()
            await app.stop()
            await components["agent"].wait_background()
            await db_manager.close()
            logger.info("memobot stopped")


def main() -> None:
    settings = Settings()
    setup_logging(settings.debug)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
