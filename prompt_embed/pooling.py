"""Embedding extraction strategies.

Two strategies share the same batch-packing skeleton:

- ``PooledStrategy`` asks the engine for one vector per sequence (falling back
  to the last token's vector) and L2-normalizes it.
- ``ManualStrategy`` asks for every token's vector and mean-pools them per
  sequence. Its rows are not normalized.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

import numpy as np

from .batch import Batch
from .types import MissingEmbedding, MissingPolicy, PoolingMode


LOGGER = logging.getLogger(__name__)


class EmbeddingSource(Protocol):
    def get_embedding_for_sequence(self, seq_id: int) -> np.ndarray | None: ...

    def get_embedding_for_slot(self, slot_index: int) -> np.ndarray | None: ...


class PoolingStrategy(Protocol):
    mode: PoolingMode

    def mark_outputs_for_sequence(self, batch: Batch, tokens: Sequence[int], seq_id: int) -> None: ...

    def extract_rows(
        self,
        engine: EmbeddingSource,
        batch: Batch,
        output: np.ndarray,
        first_row: int,
    ) -> int: ...


def normalize_embedding(vector: Any) -> np.ndarray:
    """Divide by the Euclidean norm; a zero vector is returned unchanged."""

    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.sqrt(np.sum(arr.astype(np.float64) ** 2)))
    if norm == 0.0:
        return arr.copy()
    return (arr / norm).astype(np.float32)


def mean_pool(embeddings: Any) -> np.ndarray:
    """Component-wise arithmetic mean over the rows of a ``[n_tokens, n_embd]`` matrix."""

    arr = np.asarray(embeddings, dtype=np.float32)
    if arr.ndim != 2:
        raise ValueError(f"embeddings must be 2D, got shape {arr.shape}")
    if arr.shape[0] == 0:
        raise ValueError("cannot mean-pool zero embeddings")
    return arr.astype(np.float64).mean(axis=0).astype(np.float32)


class EmbeddingArena:
    """Per-batch scratch buffer for raw token embeddings.

    Buffers exist only inside the ``with`` block and are dropped on every exit
    path.
    """

    def __init__(self, n_slots: int, n_embd: int) -> None:
        if n_slots < 0 or n_embd <= 0:
            raise ValueError(f"invalid arena shape ({n_slots}, {n_embd})")
        self.shape = (int(n_slots), int(n_embd))
        self.values: np.ndarray | None = None
        self.present: np.ndarray | None = None

    def __enter__(self) -> "EmbeddingArena":
        self.values = np.zeros(self.shape, dtype=np.float32)
        self.present = np.zeros(self.shape[0], dtype=bool)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.values = None
        self.present = None

    @property
    def is_open(self) -> bool:
        return self.values is not None

    def store(self, slot_index: int, embedding: Any) -> None:
        if self.values is None or self.present is None:
            raise RuntimeError("EmbeddingArena is not open")
        self.values[slot_index] = np.asarray(embedding, dtype=np.float32)
        self.present[slot_index] = True

    def pool(self, start: int, end: int, policy: MissingPolicy) -> np.ndarray | None:
        """Mean of slots ``[start, end)``; ``None`` when no slot in range has a value."""

        if self.values is None or self.present is None:
            raise RuntimeError("EmbeddingArena is not open")

        present = self.present[start:end]
        if not present.any():
            return None
        if policy == MissingPolicy.EXCLUDE:
            return mean_pool(self.values[start:end][present])
        # Missing slots hold zeros, so they count toward the divisor.
        return mean_pool(self.values[start:end])


def _log_missing(slot_index: int, seq_id: int) -> None:
    LOGGER.warning("%s (seq_id=%d)", MissingEmbedding(slot_index, seq_id), seq_id)


class PooledStrategy:
    """Engine-native sequence pooling with per-slot fallback, L2-normalized."""

    mode = PoolingMode.POOLED

    def mark_outputs_for_sequence(self, batch: Batch, tokens: Sequence[int], seq_id: int) -> None:
        batch.add_sequence(tokens, seq_id, all_outputs=False)

    def extract_rows(
        self,
        engine: EmbeddingSource,
        batch: Batch,
        output: np.ndarray,
        first_row: int,
    ) -> int:
        missing = 0
        for slot_index in batch.output_indices():
            seq_id = batch.seq_ids[slot_index]

            embedding = engine.get_embedding_for_sequence(seq_id)
            if embedding is None:
                embedding = engine.get_embedding_for_slot(slot_index)
            if embedding is None:
                _log_missing(slot_index, seq_id)
                missing += 1
                continue

            output[first_row + seq_id] = normalize_embedding(embedding)
        return missing


class ManualStrategy:
    """Mean pooling over every token embedding of a sequence, not normalized."""

    mode = PoolingMode.MANUAL

    def __init__(self, missing_policy: MissingPolicy = MissingPolicy.EXCLUDE) -> None:
        self.missing_policy = MissingPolicy(missing_policy)

    def mark_outputs_for_sequence(self, batch: Batch, tokens: Sequence[int], seq_id: int) -> None:
        batch.add_sequence(tokens, seq_id, all_outputs=True)

    def extract_rows(
        self,
        engine: EmbeddingSource,
        batch: Batch,
        output: np.ndarray,
        first_row: int,
    ) -> int:
        if batch.n_tokens == 0:
            return 0

        missing = 0
        with EmbeddingArena(batch.capacity, output.shape[1]) as arena:
            seq_start = 0
            for slot_index in range(batch.n_tokens):
                # A position reset marks the start of the next sequence.
                if slot_index != 0 and batch.pos[slot_index] == 0:
                    row = first_row + batch.seq_ids[slot_index - 1]
                    self._flush(arena, output, row, seq_start, slot_index)
                    seq_start = slot_index

                if not batch.output[slot_index]:
                    continue

                embedding = engine.get_embedding_for_slot(slot_index)
                if embedding is None:
                    _log_missing(slot_index, batch.seq_ids[slot_index])
                    missing += 1
                    continue
                arena.store(slot_index, embedding)

            self._flush(arena, output, first_row + batch.seq_ids[-1], seq_start, batch.n_tokens)
        return missing

    def _flush(self, arena: EmbeddingArena, output: np.ndarray, row: int, start: int, end: int) -> None:
        pooled = arena.pool(start, end, self.missing_policy)
        if pooled is not None:
            output[row] = pooled


def resolve_strategy(
    mode: PoolingMode | str,
    *,
    missing_policy: MissingPolicy | str = MissingPolicy.EXCLUDE,
) -> PoolingStrategy:
    """Map a configured pooling mode to its strategy object."""

    resolved = PoolingMode(str(getattr(mode, "value", mode)).strip().lower())
    if resolved == PoolingMode.MANUAL:
        return ManualStrategy(MissingPolicy(missing_policy))
    return PooledStrategy()


__all__ = [
    "EmbeddingArena",
    "EmbeddingSource",
    "ManualStrategy",
    "PooledStrategy",
    "PoolingStrategy",
    "mean_pool",
    "normalize_embedding",
    "resolve_strategy",
]
