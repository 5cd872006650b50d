"""Fixed-capacity token batch and greedy sequence packing.

A single ``Batch`` is reused for the whole run: it is filled with whole
sequences, handed to the engine, then cleared and refilled. ``pack_batches``
drives that cycle and never splits a sequence across two batches.
"""

from __future__ import annotations

from typing import Callable, Iterable, Iterator, Sequence

from .types import BatchSlot


AddSequence = Callable[["Batch", Sequence[int], int], None]


class Batch:
    """Rolling buffer of token slots with a hard token capacity."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self.capacity = int(capacity)
        self.tokens: list[int] = []
        self.pos: list[int] = []
        self.seq_ids: list[int] = []
        self.output: list[bool] = []

    @property
    def n_tokens(self) -> int:
        return len(self.tokens)

    @property
    def n_seq(self) -> int:
        return len(set(self.seq_ids))

    @property
    def remaining(self) -> int:
        return self.capacity - self.n_tokens

    def __len__(self) -> int:
        return self.n_tokens

    def __iter__(self) -> Iterator[BatchSlot]:
        for index in range(self.n_tokens):
            yield self.slot(index)

    def slot(self, index: int) -> BatchSlot:
        return BatchSlot(
            token=self.tokens[index],
            pos=self.pos[index],
            seq_id=self.seq_ids[index],
            output=self.output[index],
        )

    def can_fit(self, n_tokens: int) -> bool:
        return self.n_tokens + n_tokens <= self.capacity

    def add(self, token: int, pos: int, seq_id: int, output: bool) -> None:
        if self.n_tokens >= self.capacity:
            raise ValueError(f"Batch is full ({self.capacity} tokens)")

        self.tokens.append(int(token))
        self.pos.append(int(pos))
        self.seq_ids.append(int(seq_id))
        self.output.append(bool(output))

    def add_sequence(self, tokens: Sequence[int], seq_id: int, *, all_outputs: bool = False) -> None:
        """Append one whole sequence, flagging its last slot (or every slot) for output."""

        if not self.can_fit(len(tokens)):
            raise ValueError(
                f"Sequence of {len(tokens)} tokens does not fit in batch "
                f"({self.n_tokens}/{self.capacity} used)"
            )

        last = len(tokens) - 1
        for pos, token in enumerate(tokens):
            self.add(token, pos, seq_id, all_outputs or pos == last)

    def output_indices(self) -> list[int]:
        return [index for index, flag in enumerate(self.output) if flag]

    def clear(self) -> None:
        self.tokens.clear()
        self.pos.clear()
        self.seq_ids.clear()
        self.output.clear()


def pack_batches(
    sequences: Iterable[Sequence[int]],
    batch: Batch,
    add_sequence: AddSequence,
) -> Iterator[tuple[int, int]]:
    """Greedily pack sequences into ``batch``, yielding each full batch.

    Yields ``(first_row, n_seq)`` whenever the batch is ready to decode. The
    caller must consume the batch before resuming the generator, which then
    clears it. Local sequence ids restart at 0 for every batch. A batch is
    flushed only when the next sequence would strictly overflow it; the last
    batch is always yielded when it holds at least one sequence.
    """

    processed = 0
    in_batch = 0

    for tokens in sequences:
        if len(tokens) > batch.capacity:
            raise ValueError(
                f"Sequence of {len(tokens)} tokens exceeds batch capacity ({batch.capacity})"
            )

        if batch.n_tokens + len(tokens) > batch.capacity:
            yield processed, in_batch
            batch.clear()
            processed += in_batch
            in_batch = 0

        add_sequence(batch, tokens, in_batch)
        in_batch += 1

    if in_batch > 0:
        yield processed, in_batch


def plan_batches(sequences: Iterable[Sequence[int]], capacity: int) -> list[list[int]]:
    """Return the prompt indices that land in each batch, without decoding."""

    batch = Batch(capacity)
    plan: list[list[int]] = []

    def _add(target: Batch, tokens: Sequence[int], seq_id: int) -> None:
        target.add_sequence(tokens, seq_id)

    for first_row, n_seq in pack_batches(sequences, batch, _add):
        plan.append(list(range(first_row, first_row + n_seq)))

    return plan


__all__ = [
    "AddSequence",
    "Batch",
    "pack_batches",
    "plan_batches",
]
