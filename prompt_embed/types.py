"""Shared type definitions for the prompt embedding pipeline.

This module is intentionally dependency-light so every pipeline component can
import common records and errors without introducing import cycles.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence


TokenSequence = list[int]


class PoolingMode(str, Enum):
    """How per-prompt embeddings are extracted from engine outputs."""

    POOLED = "pooled"
    MANUAL = "manual"


class MissingPolicy(str, Enum):
    """How manual mean pooling treats slots whose embedding is unavailable."""

    EXCLUDE = "exclude"
    ZERO = "zero"


class TokenLimitExceeded(ValueError):
    """A single prompt tokenizes to more tokens than one batch can hold."""

    def __init__(self, prompt_index: int, n_tokens: int, capacity: int) -> None:
        self.prompt_index = int(prompt_index)
        self.n_tokens = int(n_tokens)
        self.capacity = int(capacity)
        super().__init__(
            f"number of tokens in input line {self.prompt_index} ({self.n_tokens}) "
            f"exceeds batch size ({self.capacity}), increase batch size and re-run"
        )


class ModelLoadFailure(RuntimeError):
    """The inference engine could not be initialized."""


class DecodeFailure(RuntimeError):
    """The inference engine failed to process a batch."""


class MissingEmbedding(LookupError):
    """A requested slot or sequence embedding is not available."""

    def __init__(self, slot_index: int, seq_id: int | None = None) -> None:
        self.slot_index = int(slot_index)
        self.seq_id = seq_id
        super().__init__(f"failed to get embeddings for token {self.slot_index}")


@dataclass(frozen=True, slots=True)
class Prompt:
    """One line of input text, identified by its position in the input."""

    index: int
    text: str


@dataclass(frozen=True, slots=True)
class BatchSlot:
    """One token slot inside a batch."""

    token: int
    pos: int
    seq_id: int
    output: bool


@dataclass(frozen=True, slots=True)
class EmbedStats:
    n_prompts: int = 0
    n_tokens: int = 0
    n_batches: int = 0
    failed_batches: int = 0
    missing_embeddings: int = 0
    n_embd: int = 0
    elapsed_seconds: float = 0.0

    def to_json(self) -> dict[str, Any]:
        return {
            "n_prompts": self.n_prompts,
            "n_tokens": self.n_tokens,
            "n_batches": self.n_batches,
            "failed_batches": self.failed_batches,
            "missing_embeddings": self.missing_embeddings,
            "n_embd": self.n_embd,
            "elapsed_seconds": self.elapsed_seconds,
        }


def total_tokens(sequences: Sequence[Sequence[int]]) -> int:
    return sum(len(seq) for seq in sequences)


__all__ = [
    "BatchSlot",
    "DecodeFailure",
    "EmbedStats",
    "MissingEmbedding",
    "MissingPolicy",
    "ModelLoadFailure",
    "PoolingMode",
    "Prompt",
    "TokenLimitExceeded",
    "TokenSequence",
    "total_tokens",
]
