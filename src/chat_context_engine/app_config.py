from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    anthropic_api_key: str | None
    tenant_id: str


@dataclass
class AppConfig:
    model: str
    max_total_tokens: int
    system_message_buffer: int
    max_tool_response_tokens: int
    aggressive_tool_response_tokens: int
    summarize_min_messages: int
    summarize_every_messages: int
    summarize_threshold_tokens: int
    summary_keep_recent: int
    recent_message_count: int
    summary_model: str
    storage_backend: str
    storage_path: str
    share_storage_path: str
    storage_quota_bytes: int
    max_sessions: int
    eviction_batch_size: int
    autosave_delay_seconds: float
    index_refresh_delay_seconds: float
    share_rate_limit_per_hour: int
    share_base_path: str
    completion_timeout_seconds: float
    log_level: str
    log_consumers: list | None


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def parse_app_config(config: dict) -> AppConfig:
    backend = str(config.get("StorageBackend", "sqlite")).strip().lower()
    if backend not in ("memory", "sqlite"):
        raise ValueError(f"Unknown StorageBackend: {backend!r} (expected 'memory' or 'sqlite')")

    return AppConfig(
        model=config.get("Model", "gpt-4"),
        max_total_tokens=int(config.get("MaxTotalTokens", 100_000)),
        system_message_buffer=int(config.get("SystemMessageBuffer", 1000)),
        max_tool_response_tokens=int(config.get("MaxToolResponseTokens", 8000)),
        aggressive_tool_response_tokens=int(config.get("AggressiveToolResponseTokens", 500)),
        summarize_min_messages=int(config.get("SummarizeMinMessages", 20)),
        summarize_every_messages=int(config.get("SummarizeEveryMessages", 10)),
        summarize_threshold_tokens=int(config.get("SummarizeThresholdTokens", 80_000)),
        summary_keep_recent=int(config.get("SummaryKeepRecent", 5)),
        recent_message_count=int(config.get("RecentMessageCount", 15)),
        summary_model=config.get("SummaryModel", "claude-haiku-4-5-20251001"),
        storage_backend=backend,
        storage_path=str(config.get("StoragePath", ".chat_context/sessions.db")),
        share_storage_path=str(config.get("ShareStoragePath", ".chat_context/shares.db")),
        storage_quota_bytes=int(config.get("StorageQuotaBytes", 5 * 1024 * 1024)),
        max_sessions=int(config.get("MaxSessions", 50)),
        eviction_batch_size=int(config.get("EvictionBatchSize", 10)),
        autosave_delay_seconds=float(config.get("AutoSaveDelaySeconds", 2.0)),
        index_refresh_delay_seconds=float(config.get("IndexRefreshDelaySeconds", 10.0)),
        share_rate_limit_per_hour=int(config.get("ShareRateLimitPerHour", 10)),
        share_base_path=str(config.get("ShareBasePath", "/share")),
        completion_timeout_seconds=float(config.get("CompletionTimeoutSeconds", 120)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY") or None,
        tenant_id=os.environ.get("CHAT_CONTEXT_TENANT", "local"),
    )
