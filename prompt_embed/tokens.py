"""Prompt tokenization with separator handling and capacity checks."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from .types import Prompt, TokenLimitExceeded, TokenSequence


LOGGER = logging.getLogger(__name__)


class Tokenizer(Protocol):
    def tokenize(self, text: str) -> list[int]: ...

    def token_for_separator(self) -> int: ...

    def token_to_piece(self, token: int) -> str: ...


def ensure_separator(tokens: Sequence[int], sep_token: int) -> TokenSequence:
    """Return ``tokens`` terminated by ``sep_token``, appending it when absent."""

    sequence = [int(token) for token in tokens]
    if not sequence or sequence[-1] != sep_token:
        sequence.append(int(sep_token))
    return sequence


def as_prompts(prompts: Sequence[str | Prompt]) -> list[Prompt]:
    """Wrap plain strings as ``Prompt`` objects indexed by their position."""

    return [
        item if isinstance(item, Prompt) else Prompt(index=index, text=item)
        for index, item in enumerate(prompts)
    ]


def tokenize_prompts(
    tokenizer: Tokenizer,
    prompts: Sequence[str | Prompt],
    capacity: int,
    *,
    verbose: bool = False,
) -> list[TokenSequence]:
    """Tokenize every prompt, terminate it with the separator and check its length.

    Raises:
        TokenLimitExceeded: a terminated sequence is longer than ``capacity``.
            Nothing has been decoded at that point.
    """

    if capacity <= 0:
        raise ValueError("capacity must be > 0")

    items = as_prompts(prompts)
    sep_token = int(tokenizer.token_for_separator())
    sequences: list[TokenSequence] = []

    for prompt in items:
        tokens = ensure_separator(tokenizer.tokenize(prompt.text), sep_token)
        if len(tokens) > capacity:
            raise TokenLimitExceeded(prompt_index=prompt.index, n_tokens=len(tokens), capacity=capacity)
        sequences.append(tokens)

    if verbose:
        log_tokenization(tokenizer, items, sequences)

    return sequences


def log_tokenization(
    tokenizer: Tokenizer,
    prompts: Sequence[Prompt],
    sequences: Sequence[Sequence[int]],
) -> None:
    for prompt, tokens in zip(prompts, sequences):
        lines = [
            f"prompt {prompt.index}: '{prompt.text}'",
            f"number of tokens in prompt = {len(tokens)}",
        ]
        lines.extend(f"{token:6d} -> '{tokenizer.token_to_piece(token)}'" for token in tokens)
        LOGGER.info("\n".join(lines))


__all__ = [
    "Tokenizer",
    "as_prompts",
    "ensure_separator",
    "log_tokenization",
    "tokenize_prompts",
]
