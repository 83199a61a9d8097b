from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from advisor_ai.errors import IndexEmpty, InvalidInput
from advisor_ai.types import Procedure, RetrievalHit, RetrievalResult


class ProcedureIndex:
    """Read-only procedure store with linear-scan cosine similarity."""

    def __init__(
        self,
        procedures: Sequence[Procedure],
        *,
        version: str,
        dimensions: int | None = None,
    ) -> None:
        ids = [p.procedure_id for p in procedures]
        if len(set(ids)) != len(ids):
            raise InvalidInput("Procedure identifiers must be unique.")

        if dimensions is None:
            dimensions = len(procedures[0].embedding) if procedures else 0

        self._version = version
        self._dimensions = int(dimensions)
        # Sorted by id so argsort's stable tie order is ascending id.
        self._procedures: tuple[Procedure, ...] = tuple(
            sorted(procedures, key=lambda p: p.procedure_id)
        )
        self._by_id = {p.procedure_id: p for p in self._procedures}

        for p in self._procedures:
            if len(p.embedding) != self._dimensions:
                raise InvalidInput(
                    f"Procedure {p.procedure_id!r} embedding has {len(p.embedding)} dimensions, "
                    f"expected {self._dimensions}."
                )

        if self._procedures:
            matrix = np.asarray([p.embedding for p in self._procedures], dtype=np.float64)
            if not np.all(np.isfinite(matrix)):
                raise InvalidInput("Procedure embeddings must be finite.")
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0.0] = 1.0
            self._matrix = matrix / norms
        else:
            self._matrix = np.zeros((0, self._dimensions), dtype=np.float64)
        self._matrix.setflags(write=False)

    @classmethod
    def build(
        cls,
        entries: Mapping[Procedure, Sequence[float]] | Iterable[Procedure],
        *,
        version: str,
    ) -> "ProcedureIndex":
        if isinstance(entries, Mapping):
            procedures = [
                Procedure(
                    procedure_id=p.procedure_id,
                    steps=p.steps,
                    embedding=tuple(float(x) for x in vector),
                    source=p.source,
                    title=p.title,
                )
                for p, vector in entries.items()
            ]
        else:
            procedures = list(entries)
        return cls(procedures, version=version)

    @property
    def version(self) -> str:
        return self._version

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def __len__(self) -> int:
        return len(self._procedures)

    def get(self, procedure_id: str) -> Procedure | None:
        return self._by_id.get(procedure_id)

    def lookup(self, query_vector: Sequence[float], k: int | None = None) -> RetrievalResult:
        if not self._procedures:
            raise IndexEmpty()

        query = np.asarray(query_vector, dtype=np.float64)
        if query.ndim != 1 or query.shape[0] != self._dimensions:
            raise InvalidInput(
                f"Query vector must have {self._dimensions} dimensions, got shape {query.shape}."
            )
        norm = float(np.linalg.norm(query))
        if norm == 0.0 or not np.isfinite(norm):
            raise InvalidInput("Query vector must be finite and non-zero.")

        scores = self._matrix @ (query / norm)
        order = np.argsort(-scores, kind="stable")
        if k is not None:
            order = order[: max(0, k)]

        hits = tuple(
            RetrievalHit(procedure=self._procedures[i], score=float(scores[i]))
            for i in order
        )
        return RetrievalResult(hits=hits, index_version=self._version)


class ProcedureIndexHandle:
    """Holds the live index; a rebuilt index replaces it in one exclusive section."""

    def __init__(self, index: ProcedureIndex | None = None) -> None:
        self._index = index
        self._swap_lock = asyncio.Lock()

    @property
    def current(self) -> ProcedureIndex:
        index = self._index
        if index is None:
            raise IndexEmpty("No procedure index has been loaded.")
        return index

    async def swap(self, index: ProcedureIndex) -> ProcedureIndex | None:
        async with self._swap_lock:
            previous = self._index
            self._index = index
        return previous


def load_procedure_index(path: str | Path) -> ProcedureIndex:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return procedure_index_from_dict(raw)


def procedure_index_from_dict(raw: Mapping[str, Any]) -> ProcedureIndex:
    if not isinstance(raw, Mapping):
        raise InvalidInput("Procedure dataset must be a JSON object.")
    version = str(raw.get("version", "")).strip()
    if not version:
        raise InvalidInput("Procedure dataset is missing 'version'.")

    items = raw.get("procedures")
    if not isinstance(items, list):
        raise InvalidInput("Procedure dataset is missing 'procedures' list.")

    procedures: list[Procedure] = []
    for item in items:
        if not isinstance(item, Mapping):
            raise InvalidInput("Each procedure must be a JSON object.")
        procedure_id = str(item.get("id", "")).strip()
        steps = item.get("steps")
        embedding = item.get("embedding")
        if not procedure_id:
            raise InvalidInput("Procedure is missing 'id'.")
        if not isinstance(steps, list) or not all(isinstance(s, str) for s in steps):
            raise InvalidInput(f"Procedure {procedure_id!r} has invalid 'steps'.")
        if not isinstance(embedding, list) or not embedding:
            raise InvalidInput(f"Procedure {procedure_id!r} has invalid 'embedding'.")
        source = item.get("source") or {}
        procedures.append(
            Procedure(
                procedure_id=procedure_id,
                steps=tuple(s.strip() for s in steps if s.strip()),
                embedding=tuple(float(x) for x in embedding),
                source=dict(source) if isinstance(source, Mapping) else {"ref": str(source)},
                title=str(item.get("title", "")).strip(),
            )
        )

    dimensions = raw.get("dimensions")
    return ProcedureIndex(
        procedures,
        version=version,
        dimensions=int(dimensions) if dimensions is not None else None,
    )
