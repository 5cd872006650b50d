"""Prompt-to-matrix embedding pipeline orchestration."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Sequence

import numpy as np
from tqdm import tqdm

from .batch import Batch, pack_batches
from .engine import InferenceEngine
from .pooling import PoolingStrategy, PooledStrategy
from .tokens import tokenize_prompts
from .types import DecodeFailure, EmbedStats, Prompt, total_tokens


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DecodeResult:
    """Outcome of decoding one batch."""

    decoded: bool
    missing_embeddings: int = 0


def decode_batch(
    engine: InferenceEngine,
    batch: Batch,
    strategy: PoolingStrategy,
    output: np.ndarray,
    first_row: int,
    n_seq: int,
) -> DecodeResult:
    """Decode ``batch`` and write its rows into ``output[first_row:first_row + n_seq]``.

    The engine cache is cleared first so no state carries across batches. A
    failed decode is logged and does not stop the run; rows the engine could
    not produce keep their zero value.
    """

    engine.clear_cache()

    LOGGER.info("decode_batch: n_tokens = %d, n_seq = %d", batch.n_tokens, n_seq)
    decoded = True
    try:
        engine.decode(batch)
    except DecodeFailure:
        decoded = False
        LOGGER.exception(
            "failed to decode batch for rows [%d, %d)",
            first_row,
            first_row + n_seq,
        )

    missing = strategy.extract_rows(engine, batch, output, first_row)
    return DecodeResult(decoded=decoded, missing_embeddings=missing)


class EmbeddingPipeline:
    """Tokenizes prompts, packs them into batches and assembles the embedding matrix."""

    def __init__(
        self,
        engine: InferenceEngine,
        *,
        batch_size: int,
        strategy: PoolingStrategy | None = None,
        show_progress: bool = True,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        self.engine = engine
        self.batch_size = int(batch_size)
        self.strategy = strategy or PooledStrategy()
        self.show_progress = show_progress

        n_ctx_train = getattr(engine, "n_ctx_train", None)
        if n_ctx_train and self.batch_size > n_ctx_train:
            LOGGER.warning(
                "model was trained on only %d context tokens (%d specified)",
                n_ctx_train,
                self.batch_size,
            )

    def run(self, prompts: Sequence[str | Prompt], *, verbose: bool = False) -> tuple[np.ndarray, EmbedStats]:
        """Embed ``prompts`` and return the ``[n_prompts, n_embd]`` matrix with run stats.

        Raises:
            TokenLimitExceeded: a prompt does not fit in one batch. Raised
                before any batch is decoded.
        """

        started = time.perf_counter()
        sequences = tokenize_prompts(self.engine, prompts, self.batch_size, verbose=verbose)

        n_embd = int(self.engine.n_embd)
        embeddings = np.zeros((len(sequences), n_embd), dtype=np.float32)

        batch = Batch(self.batch_size)
        n_batches = 0
        failed_batches = 0
        missing_embeddings = 0

        progress = tqdm(
            total=len(sequences),
            desc="Embedding prompts",
            unit="prompt",
            disable=not self.show_progress,
        )
        try:
            for first_row, n_seq in pack_batches(sequences, batch, self.strategy.mark_outputs_for_sequence):
                result = decode_batch(self.engine, batch, self.strategy, embeddings, first_row, n_seq)

                n_batches += 1
                if not result.decoded:
                    failed_batches += 1
                missing_embeddings += result.missing_embeddings

                progress.update(n_seq)
                progress.set_postfix(
                    batches=n_batches,
                    failed=failed_batches,
                    missing=missing_embeddings,
                    refresh=False,
                )
        finally:
            progress.close()

        stats = EmbedStats(
            n_prompts=len(sequences),
            n_tokens=total_tokens(sequences),
            n_batches=n_batches,
            failed_batches=failed_batches,
            missing_embeddings=missing_embeddings,
            n_embd=n_embd,
            elapsed_seconds=round(time.perf_counter() - started, 3),
        )
        return embeddings, stats


def embed_prompts(
    engine: InferenceEngine,
    prompts: Sequence[str | Prompt],
    *,
    batch_size: int,
    strategy: PoolingStrategy | None = None,
    verbose: bool = False,
    show_progress: bool = False,
) -> tuple[np.ndarray, EmbedStats]:
    pipeline = EmbeddingPipeline(
        engine,
        batch_size=batch_size,
        strategy=strategy,
        show_progress=show_progress,
    )
    return pipeline.run(prompts, verbose=verbose)


__all__ = [
    "DecodeResult",
    "EmbeddingPipeline",
    "decode_batch",
    "embed_prompts",
]
