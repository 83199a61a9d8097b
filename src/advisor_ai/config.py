from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

EMPTY_CONTEXT_POLICIES = ("disclaimer", "suppress")
TELEMETRY_SOURCES = ("udp", "replay")


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class AdvisorConfig:
    github_token: str
    copilot_use_logged_in_user: bool
    copilot_use_custom_provider: bool
    generation_model: str
    provider_base_url: str
    provider_api_key: str
    embedding_model: str
    embedding_base_url: str
    embedding_api_key: str
    xplane_mcp_sse_url: str
    xplane_udp_host: str
    xplane_udp_port: int
    xplane_udp_local_port: int
    xplane_rref_hz: int
    xplane_retry_sec: float
    xplane_start_max_retries: int
    telemetry_source: str
    replay_path: str
    replay_speed: float
    procedure_index_path: str
    trigger_policy_path: str
    retrieval_k: int
    generation_timeout_sec: float
    generation_retry_backoff_sec: float
    clear_grace_sec: float
    empty_context_policy: str
    speak_enabled: bool
    poll_sec: float
    runtime_events_log_path: str

    @staticmethod
    def from_env() -> "AdvisorConfig":
        load_dotenv()
        project_root = Path(__file__).resolve().parents[2]
        load_dotenv(project_root / ".env")

        github_token = os.getenv("GITHUB_TOKEN", "").strip()
        provider_api_key = os.getenv("ADVISOR_PROVIDER_API_KEY", "").strip() or github_token

        return AdvisorConfig(
            github_token=github_token,
            copilot_use_logged_in_user=_bool_env("COPILOT_USE_LOGGED_IN_USER", default=not bool(github_token)),
            copilot_use_custom_provider=_bool_env("COPILOT_USE_CUSTOM_PROVIDER", default=False),
            generation_model=os.getenv("ADVISOR_GENERATION_MODEL", "openai/gpt-4.1-mini").strip(),
            provider_base_url=os.getenv("ADVISOR_PROVIDER_BASE_URL", "https://models.github.ai/inference").strip(),
            provider_api_key=provider_api_key,
            embedding_model=os.getenv("ADVISOR_EMBEDDING_MODEL", "openai/text-embedding-3-small").strip(),
            embedding_base_url=os.getenv("ADVISOR_EMBEDDING_BASE_URL", "https://models.github.ai/inference").strip(),
            embedding_api_key=os.getenv("ADVISOR_EMBEDDING_API_KEY", "").strip() or github_token,
            xplane_mcp_sse_url=os.getenv("XPLANE_MCP_SSE_URL", "http://127.0.0.1:8765/sse").strip(),
            xplane_udp_host=os.getenv("XPLANE_UDP_HOST", "127.0.0.1").strip(),
            xplane_udp_port=_int_env("XPLANE_UDP_PORT", 49000),
            xplane_udp_local_port=_int_env("XPLANE_UDP_LOCAL_PORT", 49011),
            xplane_rref_hz=_int_env("XPLANE_RREF_HZ", 10),
            xplane_retry_sec=_float_env("XPLANE_RETRY_SEC", 3.0),
            xplane_start_max_retries=_int_env("XPLANE_START_MAX_RETRIES", 0),
            telemetry_source=os.getenv("ADVISOR_TELEMETRY_SOURCE", "udp").strip().lower() or "udp",
            replay_path=os.getenv("ADVISOR_REPLAY_PATH", "").strip(),
            replay_speed=_float_env("ADVISOR_REPLAY_SPEED", 1.0),
            procedure_index_path=os.getenv("ADVISOR_PROCEDURE_INDEX_PATH", "procedures.index.json").strip(),
            trigger_policy_path=os.getenv("ADVISOR_TRIGGER_POLICY_PATH", "").strip(),
            retrieval_k=_int_env("ADVISOR_RETRIEVAL_K", 3),
            generation_timeout_sec=_float_env("ADVISOR_GENERATION_TIMEOUT_SEC", 12.0),
            generation_retry_backoff_sec=_float_env("ADVISOR_GENERATION_RETRY_BACKOFF_SEC", 1.0),
            clear_grace_sec=_float_env("ADVISOR_CLEAR_GRACE_SEC", 5.0),
            empty_context_policy=os.getenv("ADVISOR_EMPTY_CONTEXT_POLICY", "disclaimer").strip().lower()
            or "disclaimer",
            speak_enabled=_bool_env("ADVISOR_SPEAK_ENABLED", default=True),
            poll_sec=_float_env("ADVISOR_POLL_SEC", 0.05),
            runtime_events_log_path=os.getenv(
                "ADVISOR_RUNTIME_EVENTS_LOG_PATH", "logs/advisor.events.log.jsonl"
            ).strip(),
        )

    def validate(self) -> None:
        if not self.github_token and not self.copilot_use_logged_in_user:
            raise ValueError(
                "Set GITHUB_TOKEN or enable COPILOT_USE_LOGGED_IN_USER=true (and run copilot login)."
            )
        if not self.generation_model:
            raise ValueError("ADVISOR_GENERATION_MODEL is required.")
        if self.copilot_use_custom_provider and not (self.provider_base_url and self.provider_api_key):
            raise ValueError(
                "ADVISOR_PROVIDER_BASE_URL and ADVISOR_PROVIDER_API_KEY (or GITHUB_TOKEN) are required "
                "when COPILOT_USE_CUSTOM_PROVIDER=true."
            )
        if not self.embedding_model:
            raise ValueError("ADVISOR_EMBEDDING_MODEL is required.")
        if not self.embedding_api_key:
            raise ValueError("ADVISOR_EMBEDDING_API_KEY (or GITHUB_TOKEN fallback) is required.")
        if self.telemetry_source not in TELEMETRY_SOURCES:
            raise ValueError(f"ADVISOR_TELEMETRY_SOURCE must be one of {TELEMETRY_SOURCES}.")
        if self.telemetry_source == "replay" and not self.replay_path:
            raise ValueError("ADVISOR_REPLAY_PATH is required when ADVISOR_TELEMETRY_SOURCE=replay.")
        if self.replay_speed <= 0:
            raise ValueError("ADVISOR_REPLAY_SPEED must be > 0.")
        if not self.procedure_index_path:
            raise ValueError("ADVISOR_PROCEDURE_INDEX_PATH is required.")
        if self.retrieval_k < 1:
            raise ValueError("ADVISOR_RETRIEVAL_K must be >= 1.")
        if self.generation_timeout_sec <= 0:
            raise ValueError("ADVISOR_GENERATION_TIMEOUT_SEC must be > 0.")
        if self.generation_retry_backoff_sec < 0:
            raise ValueError("ADVISOR_GENERATION_RETRY_BACKOFF_SEC must be >= 0.")
        if self.clear_grace_sec < 0:
            raise ValueError("ADVISOR_CLEAR_GRACE_SEC must be >= 0.")
        if self.empty_context_policy not in EMPTY_CONTEXT_POLICIES:
            raise ValueError(f"ADVISOR_EMPTY_CONTEXT_POLICY must be one of {EMPTY_CONTEXT_POLICIES}.")
        if self.poll_sec <= 0:
            raise ValueError("ADVISOR_POLL_SEC must be > 0.")
        if self.xplane_rref_hz <= 0:
            raise ValueError("XPLANE_RREF_HZ must be > 0.")
