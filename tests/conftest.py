from __future__ import annotations

from typing import Iterable

import numpy as np
import pytest

from prompt_embed.batch import Batch
from prompt_embed.types import DecodeFailure


BOS = 1
SEP = 2


def slot_vector(token: int, pos: int, n_embd: int) -> np.ndarray:
    """Deterministic fake hidden state for one token at one position."""

    base = np.arange(1, n_embd + 1, dtype=np.float32)
    return base * (token % 7 + 1) + pos * 0.5


class FakeEngine:
    """Deterministic stand-in for the inference engine.

    Each character of a prompt becomes one token, after a leading BOS.
    """

    def __init__(
        self,
        n_embd: int = 4,
        *,
        sequence_pooling: bool = True,
        fail_on: Iterable[int] = (),
        missing_slots: Iterable[int] = (),
        n_ctx_train: int | None = None,
    ) -> None:
        self.n_embd = n_embd
        self.n_ctx_train = n_ctx_train
        self.sequence_pooling = sequence_pooling
        self.fail_on = set(fail_on)
        self.missing_slots = set(missing_slots)

        self.events: list[str] = []
        self.decoded: list[dict[str, list]] = []
        self._slots: dict[int, np.ndarray] = {}
        self._seqs: dict[int, np.ndarray] = {}

    def tokenize(self, text: str) -> list[int]:
        return [BOS] + [10 + (ord(ch) % 50) for ch in text]

    def token_for_separator(self) -> int:
        return SEP

    def token_to_piece(self, token: int) -> str:
        return f"<{token}>"

    def clear_cache(self) -> None:
        self.events.append("clear")
        self._slots = {}
        self._seqs = {}

    def decode(self, batch: Batch) -> None:
        call_index = len(self.decoded)
        self.events.append("decode")
        self.decoded.append(
            {
                "tokens": list(batch.tokens),
                "pos": list(batch.pos),
                "seq_ids": list(batch.seq_ids),
                "output": list(batch.output),
            }
        )
        if call_index in self.fail_on:
            raise DecodeFailure(f"fake failure on batch {call_index}")

        per_seq: dict[int, list[np.ndarray]] = {}
        for index, slot in enumerate(batch):
            vector = slot_vector(slot.token, slot.pos, self.n_embd)
            per_seq.setdefault(slot.seq_id, []).append(vector)
            if slot.output and index not in self.missing_slots:
                self._slots[index] = vector

        if self.sequence_pooling:
            for seq_id, vectors in per_seq.items():
                self._seqs[seq_id] = np.sum(vectors, axis=0)

    def get_embedding_for_sequence(self, seq_id: int) -> np.ndarray | None:
        return self._seqs.get(seq_id)

    def get_embedding_for_slot(self, slot_index: int) -> np.ndarray | None:
        return self._slots.get(slot_index)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


def make_batch(sequences: list[list[int]], capacity: int, *, all_outputs: bool) -> Batch:
    batch = Batch(capacity)
    for seq_id, tokens in enumerate(sequences):
        batch.add_sequence(tokens, seq_id, all_outputs=all_outputs)
    return batch
