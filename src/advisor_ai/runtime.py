from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from advisor_ai.config import AdvisorConfig
from advisor_ai.context import ContextAssembler
from advisor_ai.detector import (
    StateChangeDetector,
    TriggerPolicy,
    build_trigger_classes,
    load_trigger_policy,
)
from advisor_ai.dispatcher import AdvisoryDispatcher, DispatchPolicy
from advisor_ai.embeddings import OpenAIEmbedder
from advisor_ai.errors import InvalidInput
from advisor_ai.event_log import JsonlLogger
from advisor_ai.generation import CopilotGenerationBackend
from advisor_ai.procedure_index import ProcedureIndex, ProcedureIndexHandle, load_procedure_index
from advisor_ai.retrieval import RetrievalEngine
from advisor_ai.speech import ConsoleSpeechSink, McpSpeechSink, XPlaneMCPClient
from advisor_ai.telemetry import JsonlReplaySource, parse_flight_state
from advisor_ai.types import (
    Advisory,
    EmbeddingFunction,
    FlightState,
    GenerationBackend,
    SpeechSink,
    TelemetrySource,
)
from advisor_ai.xplane_udp import XPlaneUdpClient


class AdvisorRuntime:
    def __init__(
        self,
        config: AdvisorConfig,
        *,
        telemetry_source: TelemetrySource | None = None,
        speech_sink: SpeechSink | None = None,
        backend: GenerationBackend | None = None,
        embedder: EmbeddingFunction | None = None,
        index: ProcedureIndex | None = None,
        trigger_policy: TriggerPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._runtime_log = JsonlLogger(config.runtime_events_log_path or None)

        if telemetry_source is None:
            if config.telemetry_source == "replay":
                telemetry_source = JsonlReplaySource(config.replay_path, speed=config.replay_speed)
            else:
                telemetry_source = XPlaneUdpClient(
                    xplane_host=config.xplane_udp_host,
                    xplane_port=config.xplane_udp_port,
                    local_port=config.xplane_udp_local_port,
                    rref_hz=config.xplane_rref_hz,
                )
        self._telemetry = telemetry_source

        if speech_sink is None:
            if config.speak_enabled:
                speech_sink = McpSpeechSink(mcp_client=XPlaneMCPClient(config.xplane_mcp_sse_url))
            else:
                speech_sink = ConsoleSpeechSink()
        self._speech = speech_sink

        self._backend = backend or CopilotGenerationBackend(
            model=config.generation_model,
            github_token=config.github_token,
            use_logged_in_user=config.copilot_use_logged_in_user,
            use_custom_provider=config.copilot_use_custom_provider,
            provider_base_url=config.provider_base_url,
            provider_bearer_token=config.provider_api_key,
            request_timeout_sec=config.generation_timeout_sec,
        )

        self._owns_embedder = embedder is None
        self._embedder = embedder or OpenAIEmbedder(
            model=config.embedding_model,
            api_key=config.embedding_api_key,
            base_url=config.embedding_base_url,
        )

        self._index = ProcedureIndexHandle(index)
        self._index_loaded = index is not None

        if trigger_policy is None and config.trigger_policy_path:
            trigger_policy = load_trigger_policy(config.trigger_policy_path)
        self._detector = StateChangeDetector(build_trigger_classes(trigger_policy))

        self._dispatcher = AdvisoryDispatcher(
            retrieval=RetrievalEngine(self._index, self._embedder),
            assembler=ContextAssembler(),
            backend=self._backend,
            speech=self._speech,
            policy=DispatchPolicy(
                k=config.retrieval_k,
                generation_timeout_sec=config.generation_timeout_sec,
                retry_backoff_sec=config.generation_retry_backoff_sec,
                clear_grace_sec=config.clear_grace_sec,
                empty_context_policy=config.empty_context_policy,
            ),
            event_log=self._runtime_log,
            clock=clock,
        )

        self._stop_event = asyncio.Event()
        self._advisories: list[Advisory] = []
        self._states_seen = 0
        self._rejected = 0
        self._trigger_counts: dict[str, int] = {}

    @property
    def detector(self) -> StateChangeDetector:
        return self._detector

    @property
    def dispatcher(self) -> AdvisoryDispatcher:
        return self._dispatcher

    @property
    def advisories(self) -> list[Advisory]:
        return list(self._advisories)

    @property
    def rejected(self) -> int:
        return self._rejected

    @property
    def trigger_counts(self) -> dict[str, int]:
        return dict(self._trigger_counts)

    async def start(self) -> None:
        if not self._index_loaded:
            await self.reload_index(self._config.procedure_index_path)
        await self._start_with_retry(
            label="X-Plane MCP speech",
            starter=self._speech.start,
        )
        await self._backend.start()
        await self._dispatcher.start()
        await self._start_with_retry(
            label="Telemetry",
            starter=self._telemetry.start,
        )

    async def stop(self) -> None:
        await self._telemetry.stop()
        await self._dispatcher.stop()
        await self._backend.stop()
        await self._speech.stop()
        if self._owns_embedder and isinstance(self._embedder, OpenAIEmbedder):
            with suppress(Exception):
                await self._embedder.close()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run(self, duration_sec: float | None = None) -> None:
        started = False
        stop_reason = "unknown"
        try:
            await self.start()
            started = True
            start_epoch = time.time()
            self._runtime_log.event("runtime_started", telemetry=type(self._telemetry).__name__)

            while not self._stop_event.is_set():
                if duration_sec is not None and duration_sec > 0:
                    if time.time() - start_epoch >= duration_sec:
                        stop_reason = "duration_elapsed"
                        break

                for state in self._telemetry.drain():
                    await self.ingest(state)

                if self._telemetry.exhausted:
                    stop_reason = "telemetry_exhausted"
                    await self.settle(timeout_sec=self._config.generation_timeout_sec * 2 + 10.0)
                    break

                await asyncio.sleep(self._config.poll_sec)

            if self._stop_event.is_set():
                stop_reason = "stop_requested"
            if stop_reason == "unknown":
                stop_reason = "loop_exit"
        finally:
            if started:
                self._runtime_log.event(
                    "runtime_stopped",
                    reason=stop_reason,
                    states=self._states_seen,
                    rejected=self._rejected,
                    triggers=self._trigger_counts,
                    advisories=self._dispatcher.counts,
                )
                print(f"[STOP] {stop_reason}: {self._summary()}")
                await self.stop()

    async def ingest(self, record: Mapping[str, Any] | FlightState) -> list[Advisory]:
        """Validate one telemetry record, run detection and dispatch any triggers.

        Malformed or out-of-order records are rejected and logged; they never
        interrupt the pipeline.
        """
        try:
            state = parse_flight_state(record)
            triggers = self._detector.observe(state)
        except InvalidInput as exc:
            self._rejected += 1
            print(f"[REJECT] {exc}")
            self._runtime_log.event("telemetry_rejected", error=str(exc))
            return []

        self._states_seen += 1
        advisories: list[Advisory] = []
        for trigger in triggers:
            self._trigger_counts[trigger.trigger_class] = self._trigger_counts.get(trigger.trigger_class, 0) + 1
            print(f"[TRIGGER] {trigger.trigger_class} at t={trigger.fired_at:.2f}: {trigger.description}")
            self._runtime_log.event(
                "trigger",
                trigger_class=trigger.trigger_class,
                sequence=trigger.sequence,
                fired_at=trigger.fired_at,
                state=trigger.state.as_dict(),
            )
            advisory = await self._dispatcher.dispatch(trigger)
            self._advisories.append(advisory)
            advisories.append(advisory)

        active = self._detector.active_classes
        await self._dispatcher.update_conditions(
            {tc.class_id: tc.class_id in active for tc in self._detector.trigger_classes}
        )
        return advisories

    async def settle(self, timeout_sec: float | None = None) -> None:
        """Wait for every dispatched advisory to reach a terminal status."""
        pending = [a.wait() for a in self._advisories if not a.done]
        if not pending:
            return
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(asyncio.gather(*pending), timeout=timeout_sec)

    async def reload_index(self, path: str | Path) -> ProcedureIndex:
        index = await asyncio.to_thread(load_procedure_index, path)
        previous = await self._index.swap(index)
        self._index_loaded = True
        print(f"[INDEX] loaded {len(index)} procedures, version={index.version}")
        self._runtime_log.event(
            "index_loaded",
            path=str(path),
            version=index.version,
            procedures=len(index),
            previous_version=previous.version if previous is not None else None,
        )
        return index

    async def _start_with_retry(self, *, label: str, starter: Callable[[], Awaitable[None]]) -> None:
        attempt = 0
        max_attempts = self._config.xplane_start_max_retries
        while True:
            attempt += 1
            try:
                await starter()
                if attempt > 1:
                    print(f"[RETRY] {label} connected on attempt {attempt}.")
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._runtime_log.event(
                    "startup_retry",
                    component=label,
                    attempt=attempt,
                    error=str(exc),
                )
                print(
                    f"[RETRY] {label} unavailable: {exc}. "
                    f"Retrying in {self._config.xplane_retry_sec:.1f}s."
                )
                if max_attempts > 0 and attempt >= max_attempts:
                    raise RuntimeError(f"{label} failed to start after {attempt} attempts.") from exc
                await asyncio.sleep(self._config.xplane_retry_sec)

    def _summary(self) -> str:
        counts = self._dispatcher.counts
        parts = [f"states={self._states_seen}", f"rejected={self._rejected}"]
        parts.extend(f"{status}={n}" for status, n in counts.items() if n)
        return " ".join(parts)
