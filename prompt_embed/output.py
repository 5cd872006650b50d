"""Embedding matrix serialization and console preview.

The persisted format is a flat array of native-endian float32 values,
``n_prompts * n_embd`` long, row-major, with no header. Readers must know
``n_embd`` out of band.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
import sys
from typing import Any, Mapping, TextIO

import numpy as np


LOGGER = logging.getLogger(__name__)
FLOAT_BYTES = np.dtype(np.float32).itemsize
DEFAULT_PREVIEW_ROWS = 3


def _as_matrix(embeddings: Any) -> np.ndarray:
    matrix = np.asarray(embeddings, dtype=np.float32)
    if matrix.ndim != 2:
        raise ValueError(f"embeddings must be 2D, got shape {matrix.shape}")
    return np.ascontiguousarray(matrix)


def write_embeddings(embeddings: Any, path: str | Path) -> Path:
    """Write the embedding matrix as raw float32 values."""

    matrix = _as_matrix(embeddings)
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    LOGGER.info(
        "writing %d embeddings of size %d to %s",
        matrix.shape[0],
        matrix.shape[1],
        out_path,
    )
    with out_path.open("wb") as handle:
        handle.write(matrix.tobytes(order="C"))
    return out_path


def read_embeddings(path: str | Path, n_embd: int) -> np.ndarray:
    """Read a file produced by ``write_embeddings`` back into ``[n_prompts, n_embd]``."""

    if n_embd <= 0:
        raise ValueError("n_embd must be > 0")

    raw = Path(path).read_bytes()
    row_bytes = n_embd * FLOAT_BYTES
    if len(raw) % row_bytes != 0:
        raise ValueError(
            f"File size {len(raw)} is not a multiple of one row ({row_bytes} bytes for n_embd={n_embd})"
        )
    return np.frombuffer(raw, dtype=np.float32).reshape(-1, n_embd).copy()


def format_embedding(index: int, row: np.ndarray) -> str:
    values = " ".join(f"{value:f}" for value in row)
    return f"embedding {index}: {values}"


def print_embeddings(
    embeddings: Any,
    *,
    stream: TextIO | None = None,
    max_rows: int = DEFAULT_PREVIEW_ROWS,
) -> int:
    """Print the full vector of at most ``max_rows`` rows to a diagnostic stream."""

    matrix = _as_matrix(embeddings)
    out = stream if stream is not None else sys.stderr

    shown = min(max_rows, matrix.shape[0])
    for index in range(shown):
        out.write(format_embedding(index, matrix[index]) + "\n\n")
    out.write("\n")
    out.flush()
    return shown


def write_stats_json(payload: Mapping[str, Any], path: str | Path) -> Path:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(
        json.dumps(dict(payload), ensure_ascii=False, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    return out_path


__all__ = [
    "DEFAULT_PREVIEW_ROWS",
    "FLOAT_BYTES",
    "format_embedding",
    "print_embeddings",
    "read_embeddings",
    "write_embeddings",
    "write_stats_json",
]
