"""Inference engine contract and a Hugging Face transformers implementation.

The pipeline only talks to an engine through ``InferenceEngine``: clear the
cache, decode a batch, then read per-sequence or per-slot vectors back.
``TransformersEngine`` satisfies that contract with ``AutoModel``. Every
sequence in a batch is run as its own row of one padded forward pass, so
sequences never attend to each other.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import numpy as np

from .batch import Batch
from .types import DecodeFailure, ModelLoadFailure


LOGGER = logging.getLogger(__name__)

POOLING_NONE = "none"
POOLING_MEAN = "mean"
POOLING_CLS = "cls"
POOLING_LAST = "last"


class InferenceEngine(Protocol):
    n_embd: int
    n_ctx_train: int | None

    def clear_cache(self) -> None: ...

    def decode(self, batch: Batch) -> None: ...

    def get_embedding_for_sequence(self, seq_id: int) -> np.ndarray | None: ...

    def get_embedding_for_slot(self, slot_index: int) -> np.ndarray | None: ...

    def token_for_separator(self) -> int: ...

    def tokenize(self, text: str) -> list[int]: ...

    def token_to_piece(self, token: int) -> str: ...


def _resolve_device(device_arg: str) -> str:
    import torch

    raw = str(device_arg).strip().lower()
    if not raw or raw == "auto":
        return "cuda:0" if torch.cuda.is_available() else "cpu"

    device = torch.device(raw)
    if device.type == "cuda":
        if not torch.cuda.is_available():
            raise ValueError("CUDA requested but no CUDA device is available")
        if device.index is not None and (device.index < 0 or device.index >= torch.cuda.device_count()):
            raise ValueError(
                f"Requested CUDA device index {device.index} is out of range "
                f"(available: 0..{torch.cuda.device_count() - 1})"
            )

    if device.type == "mps" and not (hasattr(torch.backends, "mps") and torch.backends.mps.is_available()):
        raise ValueError("MPS requested but not available")

    return str(device)


def _resolve_torch_dtype(dtype_arg: str, *, resolved_device: str) -> torch.dtype:
    import torch

    key = str(dtype_arg).strip().lower()
    if key == "auto":
        if resolved_device.startswith("cuda"):
            if hasattr(torch.cuda, "is_bf16_supported") and torch.cuda.is_bf16_supported():
                return torch.bfloat16
            return torch.float16
        return torch.float32

    mapping = {
        "float16": torch.float16,
        "bfloat16": torch.bfloat16,
        "float32": torch.float32,
    }
    return mapping[key]


def pool_hidden_states(hidden: Any, pooling_type: str) -> np.ndarray | None:
    """Pool a ``[n_tokens, n_embd]`` hidden-state block for one sequence."""

    arr = np.asarray(hidden, dtype=np.float32)
    if pooling_type == POOLING_NONE or arr.shape[0] == 0:
        return None
    if pooling_type == POOLING_MEAN:
        return arr.mean(axis=0)
    if pooling_type == POOLING_CLS:
        return arr[0].copy()
    if pooling_type == POOLING_LAST:
        return arr[-1].copy()
    raise ValueError(f"Unsupported pooling_type: {pooling_type!r}")


def group_slots_by_sequence(batch: Batch) -> dict[int, list[int]]:
    """Map each local sequence id to its slot indices, ordered by position."""

    groups: dict[int, list[int]] = {}
    for slot_index, seq_id in enumerate(batch.seq_ids):
        groups.setdefault(seq_id, []).append(slot_index)
    for slots in groups.values():
        slots.sort(key=lambda index: batch.pos[index])
    return groups


class TransformersEngine:
    """Embedding engine backed by a Hugging Face ``AutoModel``."""

    def __init__(
        self,
        model: str,
        *,
        device: str = "auto",
        dtype: str = "auto",
        pooling_type: str = POOLING_MEAN,
        trust_remote_code: bool = False,
    ) -> None:
        if pooling_type not in {POOLING_NONE, POOLING_MEAN, POOLING_CLS, POOLING_LAST}:
            raise ValueError("pooling_type must be one of: none, mean, cls, last")

        self.model_name = model
        self.pooling_type = pooling_type

        try:
            from transformers import AutoModel, AutoTokenizer

            self.device = _resolve_device(device)
            self.torch_dtype = _resolve_torch_dtype(dtype, resolved_device=self.device)

            LOGGER.info(
                "Loading model/tokenizer: model=%s device=%s dtype=%s",
                model,
                self.device,
                str(self.torch_dtype).replace("torch.", ""),
            )
            self.tokenizer = AutoTokenizer.from_pretrained(model, trust_remote_code=trust_remote_code)
            self.model = AutoModel.from_pretrained(
                model,
                trust_remote_code=trust_remote_code,
                torch_dtype=self.torch_dtype,
            )
            self.model.to(self.device)
            self.model.eval()
        except Exception as exc:
            raise ModelLoadFailure(f"unable to load model '{model}': {exc}") from exc

        config = self.model.config
        self.n_embd = int(config.hidden_size)
        max_positions = getattr(config, "max_position_embeddings", None)
        self.n_ctx_train = int(max_positions) if max_positions else None

        self._sep_token = self._resolve_separator()
        self._bos_token = self._resolve_bos()
        self._pad_token = self.tokenizer.pad_token_id if self.tokenizer.pad_token_id is not None else 0

        self._slot_embeddings: dict[int, np.ndarray] = {}
        self._seq_embeddings: dict[int, np.ndarray] = {}

    def _resolve_separator(self) -> int:
        for token_id in (self.tokenizer.sep_token_id, self.tokenizer.eos_token_id):
            if token_id is not None:
                return int(token_id)
        raise ModelLoadFailure(f"tokenizer for '{self.model_name}' defines neither a SEP nor an EOS token")

    def _resolve_bos(self) -> int | None:
        for token_id in (self.tokenizer.bos_token_id, self.tokenizer.cls_token_id):
            if token_id is not None:
                return int(token_id)
        return None

    def tokenize(self, text: str) -> list[int]:
        """Tokenize with a leading BOS/CLS token and no trailing EOS."""

        ids = list(self.tokenizer(text, add_special_tokens=False)["input_ids"])
        if self._bos_token is not None:
            ids.insert(0, self._bos_token)
        return ids

    def token_for_separator(self) -> int:
        return self._sep_token

    def token_to_piece(self, token: int) -> str:
        return self.tokenizer.decode([int(token)])

    def clear_cache(self) -> None:
        self._slot_embeddings = {}
        self._seq_embeddings = {}

    def decode(self, batch: Batch) -> None:
        """Run one forward pass over ``batch`` and keep the requested outputs.

        Raises:
            DecodeFailure: the batch is empty or the forward pass failed.
        """

        import torch

        if batch.n_tokens == 0:
            raise DecodeFailure("cannot decode an empty batch")

        groups = group_slots_by_sequence(batch)
        seq_ids = list(groups)
        max_len = max(len(slots) for slots in groups.values())

        input_ids = torch.full((len(seq_ids), max_len), self._pad_token, dtype=torch.long)
        attention_mask = torch.zeros((len(seq_ids), max_len), dtype=torch.long)
        for row, seq_id in enumerate(seq_ids):
            slots = groups[seq_id]
            input_ids[row, : len(slots)] = torch.tensor([batch.tokens[index] for index in slots])
            attention_mask[row, : len(slots)] = 1

        try:
            with torch.no_grad():
                outputs = self.model(
                    input_ids=input_ids.to(self.device),
                    attention_mask=attention_mask.to(self.device),
                )
            hidden = outputs.last_hidden_state.detach().float().cpu().numpy()
        except Exception as exc:
            raise DecodeFailure(f"failed to decode batch of {batch.n_tokens} tokens: {exc}") from exc

        for row, seq_id in enumerate(seq_ids):
            slots = groups[seq_id]
            for offset, slot_index in enumerate(slots):
                if batch.output[slot_index]:
                    self._slot_embeddings[slot_index] = hidden[row, offset].copy()

            pooled = pool_hidden_states(hidden[row, : len(slots)], self.pooling_type)
            if pooled is not None:
                self._seq_embeddings[seq_id] = pooled

    def get_embedding_for_sequence(self, seq_id: int) -> np.ndarray | None:
        return self._seq_embeddings.get(int(seq_id))

    def get_embedding_for_slot(self, slot_index: int) -> np.ndarray | None:
        return self._slot_embeddings.get(int(slot_index))

    def close(self) -> None:
        import torch

        self.clear_cache()
        self.model = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()


__all__ = [
    "InferenceEngine",
    "POOLING_CLS",
    "POOLING_LAST",
    "POOLING_MEAN",
    "POOLING_NONE",
    "TransformersEngine",
    "group_slots_by_sequence",
    "pool_hidden_states",
]
