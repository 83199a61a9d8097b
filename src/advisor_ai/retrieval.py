from __future__ import annotations

from advisor_ai.errors import AdvisorError, EmbeddingFailure, InvalidK
from advisor_ai.procedure_index import ProcedureIndexHandle
from advisor_ai.types import EmbeddingFunction, FlightState, RetrievalResult


class RetrievalEngine:
    def __init__(self, index: ProcedureIndexHandle, embedder: EmbeddingFunction) -> None:
        self._index = index
        self._embedder = embedder

    async def retrieve(
        self,
        state: FlightState,
        k: int,
        *,
        hint: str | None = None,
    ) -> RetrievalResult:
        if isinstance(k, bool) or not isinstance(k, int) or k < 1:
            raise InvalidK(k)

        index = self._index.current
        query_text = describe_state(state, hint=hint)
        try:
            vector = await self._embedder.embed(query_text)
        except AdvisorError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingFailure(f"Embedding function failed: {exc}") from exc

        try:
            return index.lookup(vector, k)
        except AdvisorError:
            raise
        except (TypeError, ValueError) as exc:
            raise EmbeddingFailure(f"Embedding function returned an unusable vector: {exc}") from exc


def describe_state(state: FlightState, *, hint: str | None = None) -> str:
    parts: list[str] = []
    if hint:
        parts.append(hint.strip())

    parts.append(f"Landing gear {state.gear.value}.")
    if state.flap_index > 0:
        parts.append(f"Flaps extended to position {state.flap_index}.")
    else:
        parts.append("Flaps retracted.")
    if state.spoiler_ratio > 0.05:
        parts.append(f"Spoilers extended {state.spoiler_ratio:.0%}.")
    if state.autopilot_modes:
        parts.append("Autopilot modes " + ", ".join(sorted(state.autopilot_modes)) + ".")
    else:
        parts.append("Autopilot disengaged.")
    parts.append(f"Indicated airspeed {state.indicated_airspeed_kt:.0f} knots.")
    parts.append(f"Angle of attack {state.angle_of_attack_deg:.1f} degrees.")
    if state.altitude_agl_ft is not None:
        parts.append(f"Height above ground {state.altitude_agl_ft:.0f} feet.")
    if state.vertical_speed_fpm is not None:
        parts.append(f"Vertical speed {state.vertical_speed_fpm:.0f} feet per minute.")
    return " ".join(parts)
