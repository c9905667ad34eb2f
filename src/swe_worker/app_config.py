from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from swe_worker.agent_profile import AgentProfile, parse_agent_profile


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    github_token: str | None
    notification_token: str | None


@dataclass
class AppConfig:
    provider_name: str
    model: str
    title_model: str
    base_output_tokens: int
    temperature: float
    compaction_budget_tokens: int
    mid_turn_threshold_tokens: int
    head_ratio: float
    max_throttle_attempts: int
    max_overflow_retries: int
    history_lag_attempts: int
    idle_timeout_seconds: float
    ultrathink_keyword: str
    progress_reminder_seconds: float
    max_tool_result_chars: int
    working_directory: str
    memory_db_path: str
    blob_directory: str
    session_id: str | None
    common_prompt: str | None
    agent_profile: AgentProfile
    notification_endpoint: str | None
    notification_hub: str
    console_notifications: bool
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_str(value: object) -> str | None:
    return str(value or "").strip() or None


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "sonnet4.5"),
        title_model=config.get("TitleModel", "haiku4.5"),
        base_output_tokens=int(config.get("BaseOutputTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        compaction_budget_tokens=int(config.get("CompactionBudgetTokens", 80_000)),
        mid_turn_threshold_tokens=int(config.get("MidTurnThresholdTokens", 190_000)),
        head_ratio=float(config.get("HeadRatio", 0.6)),
        max_throttle_attempts=int(config.get("MaxThrottleAttempts", 100)),
        max_overflow_retries=int(config.get("MaxOverflowRetries", 5)),
        history_lag_attempts=int(config.get("HistoryLagAttempts", 5)),
        idle_timeout_seconds=float(config.get("IdleTimeoutSeconds", 30 * 60)),
        ultrathink_keyword=str(config.get("UltraThinkKeyword", "ultrathink")),
        progress_reminder_seconds=float(config.get("ProgressReminderSeconds", 300)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        working_directory=str(config.get("WorkingDirectory") or Path.cwd()),
        memory_db_path=str(config.get("MemoryDbPath", ".swe_worker/worker.db")),
        blob_directory=str(config.get("BlobDirectory", ".swe_worker/blobs")),
        session_id=_optional_str(config.get("SessionId")),
        common_prompt=_optional_str(config.get("CommonPrompt")),
        agent_profile=parse_agent_profile(config.get("AgentProfile")),
        notification_endpoint=_optional_str(config.get("NotificationEndpoint")),
        notification_hub=str(config.get("NotificationHub", "remoteswehub")),
        console_notifications=_to_bool(config.get("ConsoleNotifications"), default=True),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    if provider_name == "openai":
        provider_api_key = os.environ.get("OPENAI_API_KEY", "")
        provider_env_var = "OPENAI_API_KEY"
    else:
        provider_api_key = os.environ.get("ANTHROPIC_API_KEY", "")
        provider_env_var = "ANTHROPIC_API_KEY"

    return RuntimeEnv(
        provider_api_key=provider_api_key,
        provider_env_var=provider_env_var,
        github_token=os.environ.get("GITHUB_TOKEN") or None,
        notification_token=os.environ.get("NOTIFICATION_TOKEN") or None,
    )
