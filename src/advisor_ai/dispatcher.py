from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, Mapping

from advisor_ai.context import ContextAssembler
from advisor_ai.errors import (
    EmbeddingFailure,
    EmptyContext,
    GenerationError,
    GenerationTimeout,
    IndexEmpty,
    InvalidInput,
    SpeechSinkError,
)
from advisor_ai.event_log import JsonlLogger
from advisor_ai.retrieval import RetrievalEngine
from advisor_ai.types import (
    Advisory,
    AdvisoryStatus,
    GenerationBackend,
    Prompt,
    SpeechSink,
    Trigger,
)


@dataclass(frozen=True)
class DispatchPolicy:
    k: int = 3
    generation_timeout_sec: float = 12.0
    retry_backoff_sec: float = 1.0
    max_attempts: int = 2
    clear_grace_sec: float = 5.0
    empty_context_policy: str = "disclaimer"
    drain_timeout_sec: float = 5.0


@dataclass(frozen=True)
class _Submit:
    advisory: Advisory
    accepted: asyncio.Future[Advisory]


@dataclass(frozen=True)
class _Release:
    advisory: Advisory


@dataclass(frozen=True)
class _Conditions:
    states: dict[str, bool]
    at: float


@dataclass(frozen=True)
class _Stop:
    pass


class _Cancelled(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AdvisoryDispatcher:
    """Turns triggers into spoken advisories.

    The in-flight set and the condition map are owned by a single actor task and
    only change through its command queue. One speaker task owns the speech sink,
    so utterances are delivered strictly FIFO and never overlap. Generation for
    each accepted trigger runs in its own task.

    Cancellation is cooperative: it is only checked before a generation call and
    before a speech call. Speech already in progress is never interrupted.
    """

    def __init__(
        self,
        *,
        retrieval: RetrievalEngine,
        assembler: ContextAssembler,
        backend: GenerationBackend,
        speech: SpeechSink,
        policy: DispatchPolicy | None = None,
        event_log: JsonlLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retrieval = retrieval
        self._assembler = assembler
        self._backend = backend
        self._speech = speech
        self._policy = policy or DispatchPolicy()
        self._log = event_log or JsonlLogger(None)
        self._clock = clock

        self._commands: asyncio.Queue[_Submit | _Release | _Conditions | _Stop] = asyncio.Queue()
        self._speech_queue: asyncio.Queue[Advisory | None] = asyncio.Queue()
        self._in_flight: dict[str, Advisory] = {}
        self._cleared_since: dict[str, float] = {}
        self._generation_tasks: set[asyncio.Task[None]] = set()
        self._actor_task: asyncio.Task[None] | None = None
        self._speaker_task: asyncio.Task[None] | None = None
        self._shutting_down = False
        self._next_id = 0
        self._counts: dict[str, int] = {status.value: 0 for status in AdvisoryStatus}

    @property
    def running(self) -> bool:
        return self._actor_task is not None and not self._actor_task.done()

    @property
    def in_flight_classes(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    @property
    def counts(self) -> dict[str, int]:
        return dict(self._counts)

    async def start(self) -> None:
        if self.running:
            return
        self._shutting_down = False
        self._actor_task = asyncio.create_task(self._actor_loop())
        self._speaker_task = asyncio.create_task(self._speaker_loop())

    async def stop(self) -> None:
        if self._actor_task is None:
            return
        self._shutting_down = True

        pending = list(self._generation_tasks)
        if pending:
            _done, still_running = await asyncio.wait(
                pending, timeout=self._policy.drain_timeout_sec
            )
            for task in still_running:
                task.cancel()
            for task in still_running:
                with suppress(asyncio.CancelledError):
                    await task

        await self._speech_queue.put(None)
        if self._speaker_task is not None:
            await self._speaker_task

        await self._commands.put(_Stop())
        await self._actor_task
        self._actor_task = None
        self._speaker_task = None

    async def dispatch(self, trigger: Trigger) -> Advisory:
        """Submit a trigger; returns once the advisory is accepted or suppressed.

        Await ``advisory.wait()`` for the terminal outcome.
        """
        if not self.running:
            raise RuntimeError("AdvisoryDispatcher is not started.")
        self._next_id += 1
        advisory = Advisory(trigger, advisory_id=self._next_id)
        accepted: asyncio.Future[Advisory] = asyncio.get_running_loop().create_future()
        await self._commands.put(_Submit(advisory=advisory, accepted=accepted))
        return await accepted

    async def update_conditions(self, states: Mapping[str, bool]) -> None:
        if not self.running:
            return
        await self._commands.put(_Conditions(states=dict(states), at=self._clock()))

    def cancel(self, trigger_class: str) -> bool:
        advisory = self._in_flight.get(trigger_class)
        if advisory is None:
            return False
        advisory.cancellation.cancel()
        return True

    async def _actor_loop(self) -> None:
        while True:
            command = await self._commands.get()
            if isinstance(command, _Stop):
                return
            if isinstance(command, _Submit):
                self._on_submit(command)
            elif isinstance(command, _Release):
                current = self._in_flight.get(command.advisory.trigger_class)
                if current is command.advisory:
                    del self._in_flight[command.advisory.trigger_class]
            elif isinstance(command, _Conditions):
                for class_id, active in command.states.items():
                    if active:
                        self._cleared_since.pop(class_id, None)
                    else:
                        self._cleared_since.setdefault(class_id, command.at)

    def _on_submit(self, command: _Submit) -> None:
        advisory = command.advisory
        class_id = advisory.trigger_class

        if class_id in self._in_flight:
            self._record_terminal(advisory, AdvisoryStatus.SUPPRESSED, reason="duplicate_in_flight")
        elif self._shutting_down:
            self._record_terminal(advisory, AdvisoryStatus.CANCELLED, reason="shutdown")
        else:
            self._in_flight[class_id] = advisory
            # The trigger itself proves the condition is active right now.
            self._cleared_since.pop(class_id, None)
            task = asyncio.create_task(self._run_advisory(advisory))
            self._generation_tasks.add(task)
            task.add_done_callback(self._generation_tasks.discard)
            self._log.event(
                "advisory_accepted",
                advisory_id=advisory.advisory_id,
                trigger_class=class_id,
                trigger_sequence=advisory.trigger.sequence,
            )

        if not command.accepted.done():
            command.accepted.set_result(advisory)

    async def _run_advisory(self, advisory: Advisory) -> None:
        trigger = advisory.trigger
        try:
            try:
                results = await self._retrieval.retrieve(
                    trigger.state,
                    self._policy.k,
                    hint=trigger.description or None,
                )
                advisory.retrieved_ids = results.procedure_ids
                prompt = self._assembler.assemble(trigger, results)
            except EmptyContext:
                if self._policy.empty_context_policy == "suppress":
                    self._finish(advisory, AdvisoryStatus.SUPPRESSED, reason="empty_context")
                    return
                prompt = self._assembler.disclaimer_prompt(trigger)
            advisory.prompt = prompt

            advisory.text = await self._generate_with_retry(advisory, prompt)
        except _Cancelled as exc:
            self._finish(advisory, AdvisoryStatus.CANCELLED, reason=exc.reason)
            return
        except (IndexEmpty, EmbeddingFailure, InvalidInput, GenerationError) as exc:
            advisory.error = f"{type(exc).__name__}: {exc}"
            self._finish(advisory, AdvisoryStatus.FAILED, reason=type(exc).__name__)
            return
        except asyncio.CancelledError:
            self._finish(advisory, AdvisoryStatus.CANCELLED, reason="shutdown")
            raise
        except Exception as exc:  # noqa: BLE001
            advisory.error = f"{type(exc).__name__}: {exc}"
            self._finish(advisory, AdvisoryStatus.FAILED, reason="internal_error")
            return

        advisory.status = AdvisoryStatus.GENERATED
        self._log.event(
            "advisory_generated",
            advisory_id=advisory.advisory_id,
            trigger_class=advisory.trigger_class,
            attempts=advisory.attempts,
            text=advisory.text,
        )
        await self._speech_queue.put(advisory)

    async def _generate_with_retry(self, advisory: Advisory, prompt: Prompt) -> str:
        timeout = self._policy.generation_timeout_sec
        max_attempts = max(1, self._policy.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            reason = self._cancel_reason(advisory)
            if reason is not None:
                raise _Cancelled(reason)

            advisory.attempts = attempt
            try:
                return await asyncio.wait_for(self._backend.generate(prompt), timeout=timeout)
            except asyncio.TimeoutError:
                error: GenerationError = GenerationTimeout(timeout)
            except GenerationError as exc:
                error = exc
            except Exception as exc:  # noqa: BLE001
                error = GenerationError(f"{type(exc).__name__}: {exc}", transient=True)

            if not error.transient or attempt >= max_attempts:
                raise error

            backoff = self._policy.retry_backoff_sec * attempt
            print(
                f"[RETRY] {advisory.trigger_class} attempt {attempt} failed: {error}. "
                f"Retrying in {backoff:.1f}s."
            )
            self._log.event(
                "generation_retry",
                advisory_id=advisory.advisory_id,
                trigger_class=advisory.trigger_class,
                attempt=attempt,
                error=str(error),
            )
            await asyncio.sleep(backoff)

    async def _speaker_loop(self) -> None:
        while True:
            advisory = await self._speech_queue.get()
            if advisory is None:
                return

            reason = self._cancel_reason(advisory)
            if reason is not None:
                self._finish(advisory, AdvisoryStatus.CANCELLED, reason=reason)
                continue

            try:
                await self._speech.speak(advisory.text)
            except SpeechSinkError as exc:
                advisory.speech_defect = str(exc)
            except Exception as exc:  # noqa: BLE001
                advisory.speech_defect = f"{type(exc).__name__}: {exc}"
            self._finish(advisory, AdvisoryStatus.SPOKEN)

    def _cancel_reason(self, advisory: Advisory) -> str | None:
        if self._shutting_down:
            return "shutdown"
        if advisory.cancellation.is_cancelled():
            return "cancelled"
        cleared_at = self._cleared_since.get(advisory.trigger_class)
        if cleared_at is not None and self._clock() - cleared_at >= self._policy.clear_grace_sec:
            return "condition_cleared"
        return None

    def _finish(self, advisory: Advisory, status: AdvisoryStatus, *, reason: str | None = None) -> None:
        self._record_terminal(advisory, status, reason=reason)
        self._commands.put_nowait(_Release(advisory))

    def _record_terminal(
        self,
        advisory: Advisory,
        status: AdvisoryStatus,
        *,
        reason: str | None = None,
    ) -> None:
        advisory.finish(status, reason=reason)
        self._counts[status.value] += 1
        self._log.event("advisory_" + status.value, advisory=advisory.as_dict())

        if status == AdvisoryStatus.SPOKEN:
            if advisory.speech_defect:
                print(f"[SPEECH] {advisory.trigger_class}: delivered with defect: {advisory.speech_defect}")
            else:
                print(f"[ADVISORY] {advisory.trigger_class}: {advisory.text}")
        elif status == AdvisoryStatus.FAILED:
            print(f"[FAILED] {advisory.trigger_class}: {advisory.error}")
        elif status == AdvisoryStatus.SUPPRESSED:
            print(f"[SUPPRESSED] {advisory.trigger_class}: {reason}")
        elif status == AdvisoryStatus.CANCELLED:
            print(f"[CANCELLED] {advisory.trigger_class}: {reason}")
