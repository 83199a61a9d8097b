from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from contextlib import suppress
from pathlib import Path
from typing import Any, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from advisor_ai.errors import InvalidInput
from advisor_ai.types import FlightState, GearPosition, TelemetrySource


class FlightStateRecord(BaseModel):
    """Validated shape of one telemetry record at the ingest boundary."""

    model_config = ConfigDict(extra="ignore", frozen=True, allow_inf_nan=False)

    timestamp_sec: float = Field(validation_alias=AliasChoices("timestamp_sec", "timestamp", "ts"))
    gear: GearPosition
    flap_index: int = Field(ge=0)
    spoiler_ratio: float = Field(ge=0.0, le=1.0)
    autopilot_modes: frozenset[str] = frozenset()
    indicated_airspeed_kt: float = Field(ge=0.0)
    angle_of_attack_deg: float
    altitude_agl_ft: float | None = None
    vertical_speed_fpm: float | None = None

    @field_validator("gear", mode="before")
    @classmethod
    def _coerce_gear(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return GearPosition.DOWN if value else GearPosition.UP
        if isinstance(value, (int, float)):
            # Gear deploy ratio: 0 is up and locked, 1 is down and locked.
            if value >= 0.99:
                return GearPosition.DOWN
            if value <= 0.01:
                return GearPosition.UP
            return GearPosition.TRANSIT
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("autopilot_modes", mode="before")
    @classmethod
    def _coerce_modes(cls, value: Any) -> Any:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(str(m).strip().upper() for m in value if str(m).strip())
        return value

    def to_state(self) -> FlightState:
        return FlightState(
            timestamp_sec=self.timestamp_sec,
            gear=self.gear,
            flap_index=self.flap_index,
            spoiler_ratio=self.spoiler_ratio,
            autopilot_modes=self.autopilot_modes,
            indicated_airspeed_kt=self.indicated_airspeed_kt,
            angle_of_attack_deg=self.angle_of_attack_deg,
            altitude_agl_ft=self.altitude_agl_ft,
            vertical_speed_fpm=self.vertical_speed_fpm,
        )


def parse_flight_state(record: Mapping[str, Any] | FlightState) -> FlightState:
    payload = record.as_dict() if isinstance(record, FlightState) else record
    if not isinstance(payload, Mapping):
        raise InvalidInput(f"Flight state record must be a mapping, got {type(record).__name__}.")
    try:
        return FlightStateRecord.model_validate(dict(payload)).to_state()
    except ValidationError as exc:
        raise InvalidInput(f"Malformed flight state: {_summarize_errors(exc)}") from exc


def _summarize_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc or 'record'}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class JsonlReplaySource(TelemetrySource):
    """Replays recorded telemetry, paced by record timestamps."""

    def __init__(self, path: str | Path, *, speed: float = 1.0) -> None:
        self._path = Path(path)
        self._speed = max(1e-6, float(speed))
        self._records: list[FlightState] = []
        self._rejected = 0
        self._cursor = 0
        self._started_at: float | None = None
        self._ready: deque[FlightState] = deque()
        self._pump_task: asyncio.Task[None] | None = None

    @property
    def rejected(self) -> int:
        return self._rejected

    @property
    def exhausted(self) -> bool:
        return self._started_at is not None and self._cursor >= len(self._records) and not self._ready

    async def start(self) -> None:
        self._records = []
        self._rejected = 0
        for line_no, line in enumerate(self._path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                self._records.append(parse_flight_state(json.loads(line)))
            except (json.JSONDecodeError, InvalidInput) as exc:
                self._rejected += 1
                print(f"[REPLAY] line {line_no} rejected: {exc}")
        self._cursor = 0
        self._started_at = time.monotonic()
        self._pump_task = asyncio.create_task(self._pump())

    async def stop(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._pump_task
        self._pump_task = None

    def drain(self) -> list[FlightState]:
        out = list(self._ready)
        self._ready.clear()
        return out

    async def _pump(self) -> None:
        if not self._records or self._started_at is None:
            return
        origin = self._records[0].timestamp_sec
        while self._cursor < len(self._records):
            state = self._records[self._cursor]
            due = self._started_at + (state.timestamp_sec - origin) / self._speed
            delay = due - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
            self._ready.append(state)
            self._cursor += 1
