"""
Model Analyzer
Derives the architecture descriptor and summary information from a parsed
GGUF header.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Sequence

from gguf.constants import LlamaFileType

from .gguf_reader import GGUFHeader, MetadataTable, TensorInfo, total_params


@dataclass(frozen=True)
class ArchitectureInfo:
    """Normalized architecture parameters of a model."""

    architecture: str = "unknown"
    name: str = "Unknown Model"
    file_type: int | None = None
    block_count: int = 0
    context_length: int = 0
    embedding_length: int = 0
    feed_forward_length: int = 0
    head_count: int = 0
    head_count_kv: int = 0
    expert_count: int = 0
    expert_used_count: int = 0
    vocab_size: int = 0
    rope_freq_base: float = 0.0
    rope_dimension_count: int = 0

    @property
    def is_moe(self) -> bool:
        return self.expert_count > 1

    @property
    def is_gqa(self) -> bool:
        return 0 < self.head_count_kv < self.head_count

    @property
    def head_dim(self) -> int:
        if not self.embedding_length or not self.head_count:
            return 0
        return self.embedding_length // self.head_count

    @property
    def file_type_name(self) -> str:
        return file_type_name(self.file_type)

    @property
    def model_type(self) -> str:
        if self.is_moe:
            return "MoE"
        return "Dense (GQA)" if self.is_gqa else "Dense"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.update(
            is_moe=self.is_moe,
            is_gqa=self.is_gqa,
            head_dim=self.head_dim,
            file_type_name=self.file_type_name,
        )
        return data


def file_type_name(file_type: int | None) -> str:
    """Human readable name of ``general.file_type`` (e.g. ``Q4_K_M``)."""
    if file_type is None:
        return "unknown"
    try:
        name = LlamaFileType(file_type).name
    except ValueError:
        return f"Type {file_type}"
    return name.removeprefix("MOSTLY_").removeprefix("ALL_")


def _lookup(metadata: MetadataTable, arch: str, field: str) -> int | float | None:
    # architecture-namespaced key first, then the bare key; NaN and inf count as absent
    value = metadata.get_number(f"{arch}.{field}")
    if value is None:
        value = metadata.get_number(field)
    if value is None or not math.isfinite(value):
        return None
    return value


def extract_arch_info(metadata: MetadataTable) -> ArchitectureInfo:
    """
    Extract the architecture descriptor from the header metadata.

    Never fails: absent or non-numeric fields come back as zero.
    """
    arch = metadata.get_value("general.architecture")
    arch = arch if isinstance(arch, str) and arch else "unknown"
    name = metadata.get_value("general.name")

    def get_int(field: str) -> int:
        value = _lookup(metadata, arch, field)
        return int(value) if value else 0

    head_count = get_int("attention.head_count")
    vocab_size = get_int("vocab_size")
    if not vocab_size:
        tokens = metadata.get_value("tokenizer.ggml.tokens")
        vocab_size = len(tokens) if isinstance(tokens, list) else 0

    file_type = metadata.get_number("general.file_type")

    return ArchitectureInfo(
        architecture=arch,
        name=name if isinstance(name, str) and name else "Unknown Model",
        file_type=int(file_type) if file_type is not None and math.isfinite(file_type) else None,
        block_count=get_int("block_count"),
        context_length=get_int("context_length"),
        embedding_length=get_int("embedding_length"),
        feed_forward_length=get_int("feed_forward_length"),
        head_count=head_count,
        head_count_kv=get_int("attention.head_count_kv") or head_count,
        expert_count=get_int("expert_count"),
        expert_used_count=get_int("expert_used_count"),
        vocab_size=vocab_size,
        rope_freq_base=float(_lookup(metadata, arch, "rope.freq_base") or 0.0),
        rope_dimension_count=get_int("rope.dimension_count"),
    )


def format_parameter_count(count: int) -> str:
    """Format a count as 1.5K / 7.2M / 3.8B / 1.1T."""
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if count >= threshold:
            return f"{count / threshold:.1f}{suffix}"
    return str(count)


def describe_model(header: GGUFHeader, arch: ArchitectureInfo, file_size: int | None = None) -> dict[str, Any]:
    """Summary fields shown by ``gguf-viz info`` and written by the exporter."""
    params = total_params(header.tensors)
    info: dict[str, Any] = {
        "name": arch.name,
        "architecture": arch.architecture,
        "model_type": arch.model_type,
        "quantization": arch.file_type_name,
        "gguf_version": header.version,
        "tensor_count": header.tensor_count,
        "parameter_count": params,
        "parameter_count_formatted": format_parameter_count(params),
        "data_offset": header.data_offset,
        "layers": arch.block_count,
        "context_length": arch.context_length,
        "embedding_length": arch.embedding_length,
        "feed_forward_length": arch.feed_forward_length,
        "head_count": arch.head_count,
        "head_count_kv": arch.head_count_kv,
        "head_dim": arch.head_dim,
        "vocab_size": arch.vocab_size,
    }
    if arch.is_moe:
        info["expert_count"] = arch.expert_count
        info["expert_used_count"] = arch.expert_used_count
    if arch.rope_freq_base:
        info["rope_freq_base"] = arch.rope_freq_base
    if file_size is not None:
        info["file_size"] = file_size
    return info


def tensor_type_distribution(tensors: Sequence[TensorInfo]) -> dict[str, int]:
    """Count of tensors per on-disk encoding."""
    counts: dict[str, int] = {}
    for tensor in tensors:
        counts[tensor.type_name] = counts.get(tensor.type_name, 0) + 1
    return counts
