from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from advisor_ai.errors import InvalidInput
from advisor_ai.types import FlightState, GearPosition, Trigger

Thresholds = Mapping[str, float]
Predicate = Callable[[FlightState | None, FlightState, Thresholds], bool]


class DetectorPhase(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    FIRED = "fired"
    COOLDOWN = "cooldown"


class RearmMode(str, Enum):
    # Leave cooldown once the debounce duration has elapsed since firing.
    COOLDOWN = "cooldown"
    # Leave cooldown only after the predicate has been false for the full duration.
    CLEAR = "clear"


@dataclass(frozen=True)
class TriggerClass:
    class_id: str
    description: str
    predicate: Predicate
    cooldown_sec: float
    # Whether the hazard still holds; defaults to the firing predicate.
    condition: Predicate | None = None
    rearm: RearmMode = RearmMode.COOLDOWN
    confirm_samples: int = 1
    thresholds: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerPolicy:
    enabled_classes: list[str] = field(
        default_factory=lambda: [
            "gear_up_low_altitude",
            "overspeed",
            "flap_overspeed",
            "high_angle_of_attack",
            "spoilers_extended_low_altitude",
            "autopilot_disconnect",
        ]
    )
    thresholds: dict[str, float] = field(
        default_factory=lambda: {
            "gear_warning_max_agl_ft": 500.0,
            "gear_warning_max_vs_fpm": 0.0,
            "vmo_kt": 250.0,
            "flap_max_ias_kt": 200.0,
            "max_aoa_deg": 14.0,
            "spoiler_min_ratio": 0.1,
            "spoiler_warning_max_agl_ft": 1000.0,
            "spoiler_warning_min_agl_ft": 50.0,
        }
    )
    cooldown_sec: dict[str, float] = field(default_factory=dict)
    default_cooldown_sec: float = 8.0
    rearm: dict[str, str] = field(
        default_factory=lambda: {
            "overspeed": "clear",
            "flap_overspeed": "clear",
            "high_angle_of_attack": "clear",
            "spoilers_extended_low_altitude": "clear",
        }
    )
    confirm_samples: dict[str, int] = field(default_factory=dict)


def _threshold(thresholds: Thresholds, name: str, fallback: float) -> float:
    value = thresholds.get(name, fallback)
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


def gear_up_low_altitude(previous: FlightState | None, state: FlightState, t: Thresholds) -> bool:
    del previous
    if state.gear == GearPosition.DOWN or state.altitude_agl_ft is None:
        return False
    if state.altitude_agl_ft >= _threshold(t, "gear_warning_max_agl_ft", 500.0):
        return False
    if state.vertical_speed_fpm is None:
        return True
    return state.vertical_speed_fpm <= _threshold(t, "gear_warning_max_vs_fpm", 0.0)


def overspeed(previous: FlightState | None, state: FlightState, t: Thresholds) -> bool:
    del previous
    return state.indicated_airspeed_kt > _threshold(t, "vmo_kt", 250.0)


def flap_overspeed(previous: FlightState | None, state: FlightState, t: Thresholds) -> bool:
    del previous
    return state.flap_index > 0 and state.indicated_airspeed_kt > _threshold(t, "flap_max_ias_kt", 200.0)


def high_angle_of_attack(previous: FlightState | None, state: FlightState, t: Thresholds) -> bool:
    del previous
    return state.angle_of_attack_deg > _threshold(t, "max_aoa_deg", 14.0)


def spoilers_extended_low_altitude(
    previous: FlightState | None, state: FlightState, t: Thresholds
) -> bool:
    del previous
    if state.altitude_agl_ft is None:
        return False
    return (
        state.spoiler_ratio >= _threshold(t, "spoiler_min_ratio", 0.1)
        and _threshold(t, "spoiler_warning_min_agl_ft", 50.0)
        < state.altitude_agl_ft
        < _threshold(t, "spoiler_warning_max_agl_ft", 1000.0)
    )


def autopilot_disconnect(previous: FlightState | None, state: FlightState, t: Thresholds) -> bool:
    del t
    return previous is not None and previous.autopilot_engaged and not state.autopilot_engaged


def autopilot_disengaged(previous: FlightState | None, state: FlightState, t: Thresholds) -> bool:
    del previous, t
    return not state.autopilot_engaged


# class id -> (description, firing predicate, condition predicate or None)
TRIGGER_CLASS_REGISTRY: dict[str, tuple[str, Predicate, Predicate | None]] = {
    "gear_up_low_altitude": (
        "Landing gear not down while descending at low altitude.",
        gear_up_low_altitude,
        None,
    ),
    "overspeed": ("Indicated airspeed above maximum operating speed.", overspeed, None),
    "flap_overspeed": ("Flaps extended above flap limit speed.", flap_overspeed, None),
    "high_angle_of_attack": ("Angle of attack approaching stall.", high_angle_of_attack, None),
    "spoilers_extended_low_altitude": (
        "Spoilers extended on short final.",
        spoilers_extended_low_altitude,
        None,
    ),
    "autopilot_disconnect": ("Autopilot disengaged.", autopilot_disconnect, autopilot_disengaged),
}


def build_trigger_classes(policy: TriggerPolicy | None = None) -> list[TriggerClass]:
    policy = policy or TriggerPolicy()
    classes: list[TriggerClass] = []
    for class_id in policy.enabled_classes:
        entry = TRIGGER_CLASS_REGISTRY.get(class_id)
        if entry is None:
            raise ValueError(f"Unknown trigger class {class_id!r}.")
        description, predicate, condition = entry
        classes.append(
            TriggerClass(
                class_id=class_id,
                description=description,
                predicate=predicate,
                condition=condition,
                cooldown_sec=float(policy.cooldown_sec.get(class_id, policy.default_cooldown_sec)),
                rearm=RearmMode(policy.rearm.get(class_id, RearmMode.COOLDOWN.value)),
                confirm_samples=max(1, int(policy.confirm_samples.get(class_id, 1))),
                thresholds=dict(policy.thresholds),
            )
        )
    return classes


def load_trigger_policy(path: str | Path) -> TriggerPolicy:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return trigger_policy_from_dict(raw)


def trigger_policy_from_dict(raw: Mapping[str, Any]) -> TriggerPolicy:
    defaults = TriggerPolicy()
    enabled = raw.get("enabled_classes")
    thresholds = dict(defaults.thresholds)
    for name, value in (raw.get("thresholds") or {}).items():
        thresholds[str(name)] = float(value)
    return TriggerPolicy(
        enabled_classes=[str(x) for x in enabled] if isinstance(enabled, list) else defaults.enabled_classes,
        thresholds=thresholds,
        cooldown_sec={str(k): float(v) for k, v in (raw.get("cooldown_sec") or {}).items()},
        default_cooldown_sec=float(raw.get("default_cooldown_sec", defaults.default_cooldown_sec)),
        rearm={**defaults.rearm, **{str(k): str(v) for k, v in (raw.get("rearm") or {}).items()}},
        confirm_samples={str(k): int(v) for k, v in (raw.get("confirm_samples") or {}).items()},
    )


@dataclass
class _ClassState:
    phase: DetectorPhase = DetectorPhase.IDLE
    consecutive_true: int = 0
    fired_at: float | None = None
    clear_since: float | None = None
    active: bool = False


class StateChangeDetector:
    def __init__(self, trigger_classes: Sequence[TriggerClass]) -> None:
        ids = [tc.class_id for tc in trigger_classes]
        if len(set(ids)) != len(ids):
            raise ValueError("Trigger class identifiers must be unique.")
        self._classes = tuple(trigger_classes)
        self._states: dict[str, _ClassState] = {tc.class_id: _ClassState() for tc in self._classes}
        self._previous: FlightState | None = None
        self._sequence = 0

    @property
    def trigger_classes(self) -> tuple[TriggerClass, ...]:
        return self._classes

    @property
    def active_classes(self) -> frozenset[str]:
        return frozenset(cid for cid, s in self._states.items() if s.active)

    def phase(self, class_id: str) -> DetectorPhase:
        return self._states[class_id].phase

    def observe(self, state: FlightState) -> list[Trigger]:
        previous = self._previous
        if previous is not None and state.timestamp_sec < previous.timestamp_sec:
            raise InvalidInput(
                f"Out-of-order flight state: {state.timestamp_sec} < {previous.timestamp_sec}."
            )

        triggers: list[Trigger] = []
        for trigger_class in self._classes:
            if self._step(trigger_class, previous, state):
                self._sequence += 1
                triggers.append(
                    Trigger(
                        trigger_class=trigger_class.class_id,
                        state=state,
                        fired_at=state.timestamp_sec,
                        sequence=self._sequence,
                        description=trigger_class.description,
                    )
                )

        self._previous = state
        return triggers

    def _step(self, tc: TriggerClass, previous: FlightState | None, state: FlightState) -> bool:
        s = self._states[tc.class_id]
        now = state.timestamp_sec
        active = bool(tc.predicate(previous, state, tc.thresholds))
        holding = active if tc.condition is None else bool(tc.condition(previous, state, tc.thresholds))
        s.active = holding
        s.consecutive_true = s.consecutive_true + 1 if active else 0

        if s.phase == DetectorPhase.COOLDOWN:
            if not self._cooldown_elapsed(tc, s, now, holding):
                return False
            s.phase = DetectorPhase.IDLE
            s.fired_at = None
            s.clear_since = None

        if s.phase == DetectorPhase.IDLE:
            if not active:
                return False
            s.phase = DetectorPhase.ARMED

        if s.phase == DetectorPhase.ARMED:
            if not active:
                s.phase = DetectorPhase.IDLE
                return False
            if s.consecutive_true < tc.confirm_samples:
                return False
            s.phase = DetectorPhase.FIRED

        # Fired always settles into cooldown within the same observation.
        s.phase = DetectorPhase.COOLDOWN
        s.fired_at = now
        s.clear_since = None
        return True

    @staticmethod
    def _cooldown_elapsed(tc: TriggerClass, s: _ClassState, now: float, active: bool) -> bool:
        fired_at = s.fired_at if s.fired_at is not None else now
        if tc.rearm == RearmMode.COOLDOWN:
            return now - fired_at >= tc.cooldown_sec

        if active:
            s.clear_since = None
            return False
        if s.clear_since is None:
            s.clear_since = now
        return now - s.clear_since >= tc.cooldown_sec
