from __future__ import annotations

import json
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from advisor_ai.context import (
    ADVISORY_SYSTEM_PROMPT,
    DISCLAIMER_SYSTEM_PROMPT,
    PROCEDURE_DELIMITER,
    ContextAssembler,
)
from advisor_ai.errors import EmptyContext
from advisor_ai.types import FlightState, GearPosition, Procedure, RetrievalHit, RetrievalResult, Trigger


def _trigger() -> Trigger:
    state = FlightState(
        timestamp_sec=42.0,
        gear=GearPosition.UP,
        flap_index=3,
        spoiler_ratio=0.0,
        autopilot_modes=frozenset({"VS", "AP"}),
        indicated_airspeed_kt=145.0,
        angle_of_attack_deg=5.5,
        altitude_agl_ft=420.0,
        vertical_speed_fpm=-800.0,
    )
    return Trigger(
        trigger_class="gear_up_low_altitude",
        state=state,
        fired_at=42.0,
        sequence=1,
        description="Landing gear not down while descending at low altitude.",
    )


def _results() -> RetrievalResult:
    return RetrievalResult(
        hits=(
            RetrievalHit(
                Procedure("gear-warning", ("Gear lever DOWN.", "Verify three green."), (1.0,), title="Gear warning"),
                0.98,
            ),
            RetrievalHit(Procedure("go-around", ("TOGA.", "Positive rate, gear up."), (0.5,)), 0.51),
        ),
        index_version="v1",
    )


class TestContextAssembler(unittest.TestCase):
    def test_assemble_is_idempotent(self) -> None:
        assembler = ContextAssembler()
        a = assembler.assemble(_trigger(), _results())
        b = assembler.assemble(_trigger(), _results())
        self.assertEqual(a, b)
        self.assertEqual(a.render(), b.render())

    def test_procedures_kept_in_result_order(self) -> None:
        prompt = ContextAssembler().assemble(_trigger(), _results())

        blocks = prompt.context.split(PROCEDURE_DELIMITER)
        self.assertEqual(len(blocks), 2)
        self.assertTrue(blocks[0].startswith("[gear-warning]\nGear warning\n1. Gear lever DOWN."))
        self.assertTrue(blocks[1].startswith("[go-around]\n1. TOGA."))

    def test_state_serialized_with_sorted_keys(self) -> None:
        prompt = ContextAssembler().assemble(_trigger(), _results())

        decoded = json.loads(prompt.state_json)
        self.assertEqual(list(decoded), sorted(decoded))
        self.assertEqual(decoded["autopilot_modes"], ["AP", "VS"])
        self.assertEqual(decoded["gear"], "up")

    def test_render_layout(self) -> None:
        prompt = ContextAssembler().assemble(_trigger(), _results())
        rendered = prompt.render()

        self.assertTrue(rendered.startswith(ADVISORY_SYSTEM_PROMPT))
        self.assertIn("Trigger: gear_up_low_altitude", rendered)
        self.assertLess(rendered.index("Procedures:"), rendered.index("Flight state JSON:"))

    def test_empty_results_raise(self) -> None:
        with self.assertRaises(EmptyContext):
            ContextAssembler().assemble(_trigger(), RetrievalResult())

    def test_disclaimer_prompt(self) -> None:
        prompt = ContextAssembler().disclaimer_prompt(_trigger())
        self.assertEqual(prompt.system, DISCLAIMER_SYSTEM_PROMPT)
        self.assertIn("Landing gear not down", prompt.context)


if __name__ == "__main__":
    unittest.main()
