from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterator, Protocol, Sequence

from autogen_core import CancellationToken


class GearPosition(str, Enum):
    UP = "up"
    DOWN = "down"
    TRANSIT = "transit"


class AdvisoryStatus(str, Enum):
    PENDING = "pending"
    GENERATED = "generated"
    SPOKEN = "spoken"
    FAILED = "failed"
    SUPPRESSED = "suppressed"
    CANCELLED = "cancelled"


IN_FLIGHT_STATUSES: frozenset[AdvisoryStatus] = frozenset(
    {AdvisoryStatus.PENDING, AdvisoryStatus.GENERATED}
)


@dataclass(frozen=True)
class FlightState:
    timestamp_sec: float
    gear: GearPosition
    flap_index: int
    spoiler_ratio: float
    autopilot_modes: frozenset[str]
    indicated_airspeed_kt: float
    angle_of_attack_deg: float
    altitude_agl_ft: float | None = None
    vertical_speed_fpm: float | None = None

    @property
    def autopilot_engaged(self) -> bool:
        return bool(self.autopilot_modes)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["gear"] = self.gear.value
        data["autopilot_modes"] = sorted(self.autopilot_modes)
        return data


@dataclass(frozen=True)
class Procedure:
    procedure_id: str
    steps: tuple[str, ...]
    embedding: tuple[float, ...]
    source: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    title: str = ""

    @property
    def text(self) -> str:
        lines = [self.title] if self.title else []
        lines.extend(f"{i}. {step}" for i, step in enumerate(self.steps, start=1))
        return "\n".join(lines)


@dataclass(frozen=True)
class RetrievalHit:
    procedure: Procedure
    score: float


@dataclass(frozen=True)
class RetrievalResult:
    hits: tuple[RetrievalHit, ...] = ()
    index_version: str = ""

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[RetrievalHit]:
        return iter(self.hits)

    def __getitem__(self, idx: int) -> RetrievalHit:
        return self.hits[idx]

    @property
    def procedure_ids(self) -> list[str]:
        return [hit.procedure.procedure_id for hit in self.hits]


@dataclass(frozen=True)
class Trigger:
    trigger_class: str
    state: FlightState
    fired_at: float
    sequence: int
    description: str = ""


@dataclass(frozen=True)
class Prompt:
    trigger_class: str
    system: str
    context: str
    state_json: str

    def user_text(self) -> str:
        return (
            f"Trigger: {self.trigger_class}\n\n"
            "Procedures:\n"
            f"{self.context}\n\n"
            "Flight state JSON:\n"
            f"{self.state_json}"
        )

    def render(self) -> str:
        return f"{self.system}\n\n{self.user_text()}"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class Advisory:
    """One advisory tied to one trigger; completion is observed with ``wait()``."""

    def __init__(self, trigger: Trigger, advisory_id: int) -> None:
        self.trigger = trigger
        self.advisory_id = advisory_id
        self.status = AdvisoryStatus.PENDING
        self.text = ""
        self.error: str | None = None
        self.speech_defect: str | None = None
        self.reason: str | None = None
        self.attempts = 0
        self.prompt: Prompt | None = None
        self.retrieved_ids: list[str] = []
        self.cancellation = CancellationToken()
        self._done = asyncio.Event()

    @property
    def trigger_class(self) -> str:
        return self.trigger.trigger_class

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    async def wait(self) -> "Advisory":
        await self._done.wait()
        return self

    def finish(self, status: AdvisoryStatus, *, reason: str | None = None) -> None:
        self.status = status
        if reason is not None:
            self.reason = reason
        self._done.set()

    def as_dict(self) -> dict[str, Any]:
        return {
            "advisory_id": self.advisory_id,
            "trigger_class": self.trigger_class,
            "trigger_sequence": self.trigger.sequence,
            "status": self.status.value,
            "text": self.text,
            "error": self.error,
            "speech_defect": self.speech_defect,
            "reason": self.reason,
            "attempts": self.attempts,
            "retrieved_ids": list(self.retrieved_ids),
        }

    def __repr__(self) -> str:
        return (
            f"Advisory(id={self.advisory_id}, class={self.trigger_class!r}, "
            f"status={self.status.value})"
        )


class EmbeddingFunction(Protocol):
    async def embed(self, text: str) -> Sequence[float]: ...


class GenerationBackend(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def generate(self, prompt: Prompt) -> str: ...


class SpeechSink(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def speak(self, text: str) -> None: ...


class TelemetrySource(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def drain(self) -> list[FlightState]: ...

    @property
    def exhausted(self) -> bool: ...


def state_json(state: FlightState) -> str:
    return json.dumps(state.as_dict(), ensure_ascii=True, sort_keys=True)
