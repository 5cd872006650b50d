"""Embedding CLI entrypoint.

Pipeline:
1) resolve prompt text and split it into lines
2) tokenize every line and check it fits in one batch
3) pack lines into batches and decode each batch
4) write the float32 matrix, or print the first rows to stderr
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import random
import time
from typing import Any

from .config import DEFAULT_SEED, EmbedConfig, POOLING_TYPES, resolve_config
from .engine import InferenceEngine, TransformersEngine
from .output import print_embeddings, write_embeddings, write_stats_json
from .pipeline import EmbeddingPipeline
from .pooling import resolve_strategy
from .prompts import build_prompts, resolve_prompt_text
from .types import ModelLoadFailure, TokenLimitExceeded


LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compute embeddings for each line of a prompt.")

    parser.add_argument("--config", type=Path, default=None, help="Path to embed JSON/YAML config.")

    parser.add_argument("-m", "--model", type=str, default=None, help="Model id or local path.")
    parser.add_argument("-p", "--prompt", type=str, default=None, help="Prompt text; one embedding per line.")
    parser.add_argument(
        "-f",
        "--prompt_file",
        type=str,
        default=None,
        help="Read prompt text from a file; one embedding per line.",
    )
    parser.add_argument(
        "--random_prompt",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Embed a short prompt picked at random using the seed.",
    )

    parser.add_argument(
        "-b",
        "--batch_size",
        type=int,
        default=None,
        help="Batch capacity in tokens. Every line must fit in one batch.",
    )
    parser.add_argument(
        "--pooling_mode",
        type=str,
        default=None,
        choices=("pooled", "manual"),
        help="pooled: engine sequence pooling, L2-normalized. manual: mean of token embeddings.",
    )
    parser.add_argument(
        "--pooling_type",
        type=str,
        default=None,
        choices=POOLING_TYPES,
        help="Engine-native sequence pooling used by --pooling_mode pooled.",
    )
    parser.add_argument(
        "--missing_policy",
        type=str,
        default=None,
        choices=("exclude", "zero"),
        help="Manual pooling: drop missing token embeddings from the mean, or count them as zeros.",
    )

    parser.add_argument(
        "-o",
        "--output_file",
        type=str,
        default=None,
        help="Write raw float32 embeddings here. Empty prints the first rows to stderr.",
    )
    parser.add_argument("--stats_file", type=str, default=None, help="Optional JSON run summary path.")
    parser.add_argument(
        "--verbose_prompt",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Log the tokenization of every line.",
    )
    parser.add_argument("-s", "--seed", type=int, default=None, help=f"RNG seed ({DEFAULT_SEED} = time based).")

    parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Device string, e.g. auto, cpu, cuda:0, cuda:1.",
    )
    parser.add_argument(
        "--dtype",
        type=str,
        default=None,
        choices=("auto", "float16", "bfloat16", "float32"),
        help="Model compute dtype.",
    )
    parser.add_argument(
        "--trust_remote_code",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Pass trust_remote_code to tokenizer/model loading.",
    )
    parser.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Show a progress bar while decoding batches.",
    )

    parser.add_argument(
        "--log_level",
        type=str,
        default=None,
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    )

    return parser.parse_args(argv)


def _setup_logging(level_name: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level_name),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _resolve_seed(seed: int) -> int:
    if seed == DEFAULT_SEED:
        return int(time.time())
    return int(seed)


def _seed_everything(seed: int) -> None:
    from transformers import set_seed

    set_seed(seed)


def config_from_args(args: argparse.Namespace) -> EmbedConfig:
    return resolve_config(
        config_path=args.config,
        model=args.model,
        prompt=args.prompt,
        prompt_file=args.prompt_file,
        random_prompt=args.random_prompt,
        batch_size=args.batch_size,
        pooling_mode=args.pooling_mode,
        pooling_type=args.pooling_type,
        missing_policy=args.missing_policy,
        output_file=args.output_file,
        stats_file=args.stats_file,
        verbose_prompt=args.verbose_prompt,
        seed=args.seed,
        device=args.device,
        dtype=args.dtype,
        trust_remote_code=args.trust_remote_code,
        log_level=args.log_level,
    )


def run(
    config: EmbedConfig,
    *,
    engine: InferenceEngine | None = None,
    show_progress: bool = True,
) -> dict[str, Any]:
    """Embed every prompt line from ``config`` and write or print the result."""

    seed = _resolve_seed(config.seed)
    LOGGER.info("seed = %d", seed)
    rng = random.Random(seed)

    owns_engine = engine is None
    if engine is None:
        _seed_everything(seed)
        engine = TransformersEngine(
            config.model,
            device=config.device,
            dtype=config.dtype,
            pooling_type=config.pooling_type,
            trust_remote_code=config.trust_remote_code,
        )

    prompt_text = resolve_prompt_text(
        prompt=config.prompt,
        prompt_file=config.prompt_file,
        use_random_prompt=config.random_prompt,
        rng=rng,
    )
    prompts = build_prompts(prompt_text)

    strategy = resolve_strategy(config.pooling_mode, missing_policy=config.missing_policy)
    pipeline = EmbeddingPipeline(
        engine,
        batch_size=config.batch_size,
        strategy=strategy,
        show_progress=show_progress,
    )
    try:
        embeddings, stats = pipeline.run(prompts, verbose=config.verbose_prompt)
    finally:
        if owns_engine and hasattr(engine, "close"):
            engine.close()

    if config.output_file:
        write_embeddings(embeddings, config.output_file)
    else:
        print_embeddings(embeddings)

    summary = {
        **stats.to_json(),
        "model": config.model,
        "seed": seed,
        "batch_size": config.batch_size,
        "pooling_mode": config.pooling_mode.value,
        "output_file": config.output_file or None,
    }

    if config.stats_file:
        write_stats_json({**summary, "config": config.to_dict()}, config.stats_file)

    LOGGER.info("Embedding complete: %s", json.dumps(summary, sort_keys=True))
    return summary


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as exc:
        _setup_logging(args.log_level or "INFO")
        LOGGER.error("invalid config: %s", exc)
        return 2
    _setup_logging(config.log_level)

    try:
        summary = run(config, show_progress=args.progress)
    except (TokenLimitExceeded, ModelLoadFailure) as exc:
        LOGGER.error("error: %s", exc)
        return 1

    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
