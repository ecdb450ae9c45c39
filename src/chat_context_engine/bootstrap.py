from __future__ import annotations

from pathlib import Path

from loguru import logger

from chat_context_engine.app_config import AppConfig, RuntimeEnv
from chat_context_engine.engine import ChatContextEngine
from chat_context_engine.providers.anthropic_provider import AnthropicProvider
from chat_context_engine.storage import (
    AutoSaveScheduler,
    InMemoryRepository,
    KeyValueRepository,
    SessionStore,
    ShareManager,
    SqliteRepository,
)
from chat_context_engine.summarization import (
    ExtractiveSummarizer,
    ProviderSummarizer,
    SummarizationTrigger,
    Summarizer,
)
from chat_context_engine.tokenizer import TokenEstimator
from chat_context_engine.trimming import MessageTrimmer


def _resolve_path(path: str) -> str:
    resolved = Path(path)
    if not resolved.is_absolute():
        resolved = Path.cwd() / resolved
    return str(resolved)


def create_repositories(app: AppConfig) -> tuple[KeyValueRepository, KeyValueRepository]:
    """Session repository and share backend for the configured storage backend."""
    if app.storage_backend == "sqlite":
        return (
            SqliteRepository(_resolve_path(app.storage_path)),
            SqliteRepository(_resolve_path(app.share_storage_path)),
        )
    return InMemoryRepository(), InMemoryRepository()


def create_summarizer(app: AppConfig, env: RuntimeEnv) -> Summarizer:
    if env.anthropic_api_key:
        return ProviderSummarizer(
            AnthropicProvider(env.anthropic_api_key),
            app.summary_model,
            fallback=ExtractiveSummarizer(),
        )
    logger.info("ANTHROPIC_API_KEY not set, summaries are extractive")
    return ExtractiveSummarizer()


def build_engine(app: AppConfig, env: RuntimeEnv) -> ChatContextEngine:
    estimator = TokenEstimator(model=app.model)
    trimmer = MessageTrimmer(
        estimator,
        max_tool_response_tokens=app.max_tool_response_tokens,
        aggressive_tool_response_tokens=app.aggressive_tool_response_tokens,
        system_message_buffer=app.system_message_buffer,
        default_max_tokens=app.max_total_tokens,
    )
    trigger = SummarizationTrigger(
        create_summarizer(app, env),
        estimator,
        min_messages=app.summarize_min_messages,
        every_messages=app.summarize_every_messages,
        threshold_tokens=app.summarize_threshold_tokens,
        keep_recent=app.summary_keep_recent,
    )

    repository, share_backend = create_repositories(app)
    store = SessionStore(
        repository,
        quota_bytes=app.storage_quota_bytes,
        max_sessions=app.max_sessions,
        eviction_batch_size=app.eviction_batch_size,
    )
    scheduler = AutoSaveScheduler(
        store,
        delay_seconds=app.autosave_delay_seconds,
        index_delay_seconds=app.index_refresh_delay_seconds,
    )
    shares = ShareManager(
        store,
        share_backend,
        rate_limit_per_hour=app.share_rate_limit_per_hour,
        base_path=app.share_base_path,
    )

    logger.info(
        f"Engine ready: model={app.model}, budget={app.max_total_tokens:,} tokens, "
        f"storage={app.storage_backend}, quota={app.storage_quota_bytes:,} bytes"
    )
    return ChatContextEngine(
        estimator,
        trimmer,
        trigger,
        store,
        scheduler,
        shares,
        recent_message_count=app.recent_message_count,
        completion_timeout_seconds=app.completion_timeout_seconds,
        repositories=[repository, share_backend],
    )
