"""Prompt text loading and line splitting."""

from __future__ import annotations

from pathlib import Path
import random

from .types import Prompt


RANDOM_PROMPTS = (
    "So",
    "Once upon a time",
    "When",
    "The",
    "After",
    "If",
    "import",
    "He",
    "She",
    "They",
)


def split_lines(text: str) -> list[str]:
    """Split raw text into one prompt per line.

    Only ``\\n`` terminates a line. A final line without a terminator is kept,
    empty lines become empty prompts, and no whitespace is trimmed.
    """

    value = str(text or "")
    if not value:
        return []

    lines = value.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def build_prompts(text: str) -> list[Prompt]:
    return [Prompt(index=index, text=line) for index, line in enumerate(split_lines(text))]


def read_prompt_file(path: str | Path) -> str:
    """Return the full contents of a prompt file.

    Bytes that are not valid UTF-8 become U+FFFD instead of failing the run.
    """

    return Path(path).read_text(encoding="utf-8", errors="replace")


def random_prompt(rng: random.Random) -> str:
    return RANDOM_PROMPTS[rng.randrange(len(RANDOM_PROMPTS))]


def resolve_prompt_text(
    *,
    prompt: str = "",
    prompt_file: str | Path | None = None,
    use_random_prompt: bool = False,
    rng: random.Random | None = None,
) -> str:
    """Pick the prompt source: random prompt, then file, then inline text."""

    if use_random_prompt:
        return random_prompt(rng or random.Random())
    if prompt_file:
        return read_prompt_file(prompt_file)
    return prompt


__all__ = [
    "RANDOM_PROMPTS",
    "build_prompts",
    "random_prompt",
    "read_prompt_file",
    "resolve_prompt_text",
    "split_lines",
]
