from __future__ import annotations

import json
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from advisor_ai.errors import IndexEmpty, InvalidInput
from advisor_ai.procedure_index import (
    ProcedureIndex,
    ProcedureIndexHandle,
    load_procedure_index,
    procedure_index_from_dict,
)
from advisor_ai.types import Procedure


def _proc(procedure_id: str, embedding: tuple[float, ...], *steps: str) -> Procedure:
    return Procedure(
        procedure_id=procedure_id,
        steps=steps or (f"Step for {procedure_id}.",),
        embedding=embedding,
        title=procedure_id.replace("-", " ").title(),
    )


def _five_procedures() -> list[Procedure]:
    return [
        _proc("gear-warning", (1.0, 0.0, 0.0)),
        _proc("gear-extension-alternate", (0.9, 0.1, 0.0)),
        _proc("stall-recovery", (0.0, 1.0, 0.0)),
        _proc("autopilot-disconnect", (0.0, 0.0, 1.0)),
        _proc("go-around", (0.5, 0.5, 0.0)),
    ]


class TestProcedureIndexLookup(unittest.TestCase):
    def test_top_k_best_first(self) -> None:
        index = ProcedureIndex.build(_five_procedures(), version="v1")
        result = index.lookup([1.0, 0.0, 0.0], k=3)

        self.assertEqual(len(result), 3)
        self.assertEqual(result.procedure_ids, ["gear-warning", "gear-extension-alternate", "go-around"])
        scores = [hit.score for hit in result]
        self.assertEqual(scores, sorted(scores, reverse=True))
        self.assertAlmostEqual(scores[0], 1.0, places=9)
        self.assertEqual(result.index_version, "v1")

    def test_ties_break_by_ascending_id(self) -> None:
        index = ProcedureIndex.build(
            [
                _proc("zulu", (1.0, 0.0)),
                _proc("alpha", (2.0, 0.0)),
                _proc("mike", (0.0, 1.0)),
            ],
            version="v1",
        )
        result = index.lookup([3.0, 0.0])
        self.assertEqual(result.procedure_ids, ["alpha", "zulu", "mike"])

    def test_k_larger_than_index_returns_everything(self) -> None:
        index = ProcedureIndex.build(_five_procedures(), version="v1")
        self.assertEqual(len(index.lookup([0.0, 1.0, 0.0], k=50)), 5)

    def test_build_from_mapping_attaches_vectors(self) -> None:
        bare = Procedure(procedure_id="p1", steps=("Do it.",), embedding=())
        index = ProcedureIndex.build({bare: [0.0, 2.0]}, version="v2")
        self.assertEqual(index.dimensions, 2)
        self.assertEqual(index.get("p1").embedding, (0.0, 2.0))

    def test_empty_index_raises(self) -> None:
        index = ProcedureIndex.build([], version="empty")
        with self.assertRaises(IndexEmpty):
            index.lookup([1.0, 0.0, 0.0], k=1)

    def test_dimension_mismatch_on_build(self) -> None:
        with self.assertRaises(InvalidInput):
            ProcedureIndex.build([_proc("a", (1.0, 0.0)), _proc("b", (1.0, 0.0, 0.0))], version="v1")

    def test_dimension_mismatch_on_query(self) -> None:
        index = ProcedureIndex.build(_five_procedures(), version="v1")
        with self.assertRaises(InvalidInput):
            index.lookup([1.0, 0.0], k=1)

    def test_zero_query_rejected(self) -> None:
        index = ProcedureIndex.build(_five_procedures(), version="v1")
        with self.assertRaises(InvalidInput):
            index.lookup([0.0, 0.0, 0.0], k=1)

    def test_duplicate_ids_rejected(self) -> None:
        with self.assertRaises(InvalidInput):
            ProcedureIndex.build([_proc("a", (1.0,)), _proc("a", (0.5,))], version="v1")


class TestProcedureDataset(unittest.TestCase):
    def test_load_from_json_file(self) -> None:
        payload = {
            "version": "2026-01",
            "dimensions": 2,
            "procedures": [
                {
                    "id": "gear-warning",
                    "title": "Gear warning",
                    "steps": ["Gear lever DOWN.", "  ", "Three green CHECK."],
                    "embedding": [1, 0],
                    "source": {"doc": "QRH", "page": 12},
                },
                {"id": "stall", "steps": ["Pitch DOWN."], "embedding": [0, 1]},
            ],
        }
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "index.json"
            path.write_text(json.dumps(payload), encoding="utf-8")
            index = load_procedure_index(path)

        self.assertEqual(index.version, "2026-01")
        self.assertEqual(len(index), 2)
        gear = index.get("gear-warning")
        self.assertEqual(gear.steps, ("Gear lever DOWN.", "Three green CHECK."))
        self.assertEqual(gear.source["doc"], "QRH")
        self.assertEqual(gear.text, "Gear warning\n1. Gear lever DOWN.\n2. Three green CHECK.")

    def test_missing_version_rejected(self) -> None:
        with self.assertRaises(InvalidInput):
            procedure_index_from_dict({"procedures": []})

    def test_invalid_steps_rejected(self) -> None:
        with self.assertRaises(InvalidInput):
            procedure_index_from_dict(
                {"version": "v", "procedures": [{"id": "x", "steps": "not a list", "embedding": [1]}]}
            )


class TestProcedureIndexHandle(unittest.IsolatedAsyncioTestCase):
    async def test_swap_replaces_index_atomically(self) -> None:
        handle = ProcedureIndexHandle()
        with self.assertRaises(IndexEmpty):
            _ = handle.current

        first = ProcedureIndex.build(_five_procedures(), version="v1")
        second = ProcedureIndex.build(_five_procedures()[:2], version="v2")

        self.assertIsNone(await handle.swap(first))
        previous = await handle.swap(second)

        self.assertIs(previous, first)
        self.assertEqual(handle.current.version, "v2")
        # The old index is untouched by the swap.
        self.assertEqual(len(first), 5)


if __name__ == "__main__":
    unittest.main()
