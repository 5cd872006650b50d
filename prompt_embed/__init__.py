"""Prompt embedding package: batching, pooling and matrix output."""

from .batch import Batch, pack_batches, plan_batches
from .config import EmbedConfig, load_config, resolve_config, save_config
from .engine import InferenceEngine, TransformersEngine
from .output import print_embeddings, read_embeddings, write_embeddings
from .pipeline import DecodeResult, EmbeddingPipeline, decode_batch, embed_prompts
from .pooling import (
    EmbeddingArena,
    ManualStrategy,
    PooledStrategy,
    PoolingStrategy,
    mean_pool,
    normalize_embedding,
    resolve_strategy,
)
from .prompts import build_prompts, split_lines
from .tokens import ensure_separator, tokenize_prompts
from .types import (
    BatchSlot,
    DecodeFailure,
    EmbedStats,
    MissingEmbedding,
    MissingPolicy,
    ModelLoadFailure,
    PoolingMode,
    Prompt,
    TokenLimitExceeded,
)

__all__ = [
    "Batch",
    "BatchSlot",
    "DecodeFailure",
    "DecodeResult",
    "EmbedConfig",
    "EmbedStats",
    "EmbeddingArena",
    "EmbeddingPipeline",
    "InferenceEngine",
    "ManualStrategy",
    "MissingEmbedding",
    "MissingPolicy",
    "ModelLoadFailure",
    "PooledStrategy",
    "PoolingMode",
    "PoolingStrategy",
    "Prompt",
    "TokenLimitExceeded",
    "TransformersEngine",
    "build_prompts",
    "decode_batch",
    "embed_prompts",
    "ensure_separator",
    "load_config",
    "mean_pool",
    "normalize_embedding",
    "pack_batches",
    "plan_batches",
    "print_embeddings",
    "read_embeddings",
    "resolve_config",
    "resolve_strategy",
    "save_config",
    "split_lines",
    "tokenize_prompts",
    "write_embeddings",
]
