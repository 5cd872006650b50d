"""Embedding run configuration loading and validation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from pathlib import Path
from typing import Any, Mapping, TypeVar

import yaml  # type: ignore

from .types import MissingPolicy, PoolingMode


SUPPORTED_CONFIG_SUFFIXES = (".json", ".yaml", ".yml")
JSON_INDENT = 2

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_BATCH_SIZE = 512
DEFAULT_SEED = -1
MAX_SEED = 2**32 - 1

POOLING_TYPES = ("none", "mean", "cls", "last")
DEVICE_DTYPES = ("auto", "float16", "bfloat16", "float32")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

EnumT = TypeVar("EnumT", bound=Enum)


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"Invalid bool for '{key}': {value!r}")


def _as_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid int for '{key}': {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid int for '{key}': {value!r}") from exc


def _as_str(value: Any, key: str) -> str:
    if value is None:
        raise ValueError(f"Missing required string for '{key}'")
    text = str(value)
    if not text.strip():
        raise ValueError(f"'{key}' cannot be empty")
    return text


def _as_str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_enum(enum_cls: type[EnumT], value: Any, key: str) -> EnumT:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"{key} must be one of: {choices}") from exc


@dataclass(slots=True)
class EmbedConfig:
    """Flat config for one embedding run."""

    model: str = DEFAULT_MODEL

    # Prompt text may hold several lines; each line is embedded separately.
    prompt: str = ""
    prompt_file: str | None = None
    random_prompt: bool = False

    batch_size: int = DEFAULT_BATCH_SIZE
    pooling_mode: PoolingMode = PoolingMode.POOLED
    pooling_type: str = "mean"
    missing_policy: MissingPolicy = MissingPolicy.EXCLUDE

    output_file: str = ""
    stats_file: str | None = None
    verbose_prompt: bool = False
    seed: int = DEFAULT_SEED

    device: str = "auto"
    dtype: str = "auto"
    trust_remote_code: bool = False

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.model = _as_str(self.model, "model")
        self.prompt = "" if self.prompt is None else str(self.prompt)
        self.prompt_file = _as_str_or_none(self.prompt_file)
        self.output_file = "" if self.output_file is None else str(self.output_file).strip()
        self.stats_file = _as_str_or_none(self.stats_file)

        if self.prompt and self.prompt_file:
            raise ValueError("prompt and prompt_file are mutually exclusive")

        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        if self.seed != DEFAULT_SEED and not 0 <= self.seed <= MAX_SEED:
            raise ValueError(f"seed must be {DEFAULT_SEED} or between 0 and {MAX_SEED}")

        self.pooling_mode = _as_enum(PoolingMode, self.pooling_mode, "pooling_mode")
        self.missing_policy = _as_enum(MissingPolicy, self.missing_policy, "missing_policy")

        self.pooling_type = str(self.pooling_type).strip().lower()
        if self.pooling_type not in POOLING_TYPES:
            raise ValueError(f"pooling_type must be one of: {', '.join(POOLING_TYPES)}")

        self.device = _as_str(self.device, "device").strip().lower()
        self.dtype = str(self.dtype).strip().lower()
        if self.dtype not in DEVICE_DTYPES:
            raise ValueError(f"dtype must be one of: {', '.join(DEVICE_DTYPES)}")

        self.log_level = str(self.log_level).strip().upper()
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

    @property
    def console_output(self) -> bool:
        return not self.output_file

    def with_overrides(self, **overrides: Any) -> "EmbedConfig":
        payload = self.to_dict()
        for key, value in overrides.items():
            if key not in payload:
                raise ValueError(f"Unknown config key '{key}'")
            if value is not None:
                payload[key] = value

        # A single explicit prompt source replaces the other one from the base config.
        has_prompt = overrides.get("prompt") is not None
        has_prompt_file = overrides.get("prompt_file") is not None
        if has_prompt and not has_prompt_file:
            payload["prompt_file"] = None
        elif has_prompt_file and not has_prompt:
            payload["prompt"] = ""
        return EmbedConfig.from_dict(payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "prompt": self.prompt,
            "prompt_file": self.prompt_file,
            "random_prompt": self.random_prompt,
            "batch_size": self.batch_size,
            "pooling_mode": self.pooling_mode.value,
            "pooling_type": self.pooling_type,
            "missing_policy": self.missing_policy.value,
            "output_file": self.output_file,
            "stats_file": self.stats_file,
            "verbose_prompt": self.verbose_prompt,
            "seed": self.seed,
            "device": self.device,
            "dtype": self.dtype,
            "trust_remote_code": self.trust_remote_code,
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EmbedConfig":
        return cls(
            model=str(payload.get("model", DEFAULT_MODEL)),
            prompt=str(payload.get("prompt") or ""),
            prompt_file=_as_str_or_none(payload.get("prompt_file")),
            random_prompt=_as_bool(payload.get("random_prompt", False), "random_prompt"),
            batch_size=_as_int(payload.get("batch_size", DEFAULT_BATCH_SIZE), "batch_size"),
            pooling_mode=payload.get("pooling_mode", PoolingMode.POOLED.value),
            pooling_type=str(payload.get("pooling_type", "mean")),
            missing_policy=payload.get("missing_policy", MissingPolicy.EXCLUDE.value),
            output_file=str(payload.get("output_file") or ""),
            stats_file=_as_str_or_none(payload.get("stats_file")),
            verbose_prompt=_as_bool(payload.get("verbose_prompt", False), "verbose_prompt"),
            seed=_as_int(payload.get("seed", DEFAULT_SEED), "seed"),
            device=str(payload.get("device", "auto")),
            dtype=str(payload.get("dtype", "auto")),
            trust_remote_code=_as_bool(payload.get("trust_remote_code", False), "trust_remote_code"),
            log_level=str(payload.get("log_level", "INFO")),
        )


def _load_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML config at {path} must be a mapping at top level")
    return data


def load_config(path: str | Path) -> EmbedConfig:
    """Load embedding config from JSON/YAML file."""

    config_path = Path(path)
    suffix = config_path.suffix.lower()
    if suffix not in SUPPORTED_CONFIG_SUFFIXES:
        raise ValueError(
            f"Unsupported config suffix '{suffix}'. Supported: {SUPPORTED_CONFIG_SUFFIXES}"
        )

    if suffix == ".json":
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    else:
        payload = _load_yaml(config_path)

    if not isinstance(payload, dict):
        raise ValueError(f"Config at {config_path} must be a mapping")

    return EmbedConfig.from_dict(payload)


def save_config(config: EmbedConfig, path: str | Path) -> None:
    """Save embedding config as JSON or YAML based on output file extension."""

    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    payload = config.to_dict()
    suffix = out_path.suffix.lower()

    if suffix == ".json":
        out_path.write_text(
            json.dumps(payload, indent=JSON_INDENT, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return

    if suffix in {".yaml", ".yml"}:
        out_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        return

    raise ValueError(
        f"Unsupported config suffix '{suffix}'. Supported: {SUPPORTED_CONFIG_SUFFIXES}"
    )


def resolve_config(
    *,
    config_path: str | Path | None = None,
    **overrides: Any,
) -> EmbedConfig:
    """Resolve config with optional file base + CLI overrides."""

    base = load_config(config_path) if config_path else EmbedConfig()
    return base.with_overrides(**overrides)


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MODEL",
    "DEFAULT_SEED",
    "EmbedConfig",
    "JSON_INDENT",
    "MAX_SEED",
    "POOLING_TYPES",
    "SUPPORTED_CONFIG_SUFFIXES",
    "load_config",
    "resolve_config",
    "save_config",
]
