"""
Tests for architecture extraction and the model summary.
"""

import pytest
from gguf.constants import GGUFValueType, LlamaFileType

from gguf_viz.gguf_reader import MetadataTable, MetadataValue, read_header
from gguf_viz.model_analyzer import (
    ArchitectureInfo,
    describe_model,
    extract_arch_info,
    file_type_name,
    format_parameter_count,
    tensor_type_distribution,
)


def table(**entries):
    """MetadataTable from ``key=(type, value)`` pairs; dots spelled as ``__``."""
    return MetadataTable({
        key.replace("__", "."): MetadataValue(vtype, value) for key, (vtype, value) in entries.items()
    })


U32 = GGUFValueType.UINT32
STR = GGUFValueType.STRING
F32 = GGUFValueType.FLOAT32


class TestExtractArchInfo:
    def test_from_model_file(self, tiny_source):
        arch = extract_arch_info(read_header(tiny_source).metadata)

        assert arch.architecture == "llama"
        assert arch.name == "tiny-test"
        assert arch.block_count == 2
        assert arch.head_count == 4
        assert arch.head_count_kv == 4
        assert arch.embedding_length == 16
        assert arch.feed_forward_length == 64
        assert arch.context_length == 128
        assert arch.rope_freq_base == 10000.0
        assert arch.vocab_size == 32
        assert arch.head_dim == 4
        assert not arch.is_moe
        assert not arch.is_gqa

    def test_namespaced_key_wins_over_bare_key(self):
        metadata = table(
            general__architecture=(STR, "qwen2"),
            qwen2__block_count=(U32, 28),
            block_count=(U32, 3),
            embedding_length=(U32, 896),
        )
        arch = extract_arch_info(metadata)

        assert arch.block_count == 28
        assert arch.embedding_length == 896

    def test_missing_and_non_numeric_fields_are_zero(self):
        arch = extract_arch_info(table(
            general__architecture=(STR, "llama"),
            llama__block_count=(STR, "many"),
        ))

        assert arch.block_count == 0
        assert arch.head_count == 0
        assert arch.head_count_kv == 0
        assert arch.head_dim == 0
        assert arch.file_type is None

    def test_non_finite_fields_are_zero(self):
        arch = extract_arch_info(table(
            general__architecture=(STR, "llama"),
            general__file_type=(F32, float("nan")),
            llama__block_count=(F32, float("nan")),
            llama__embedding_length=(F32, float("inf")),
            llama__attention__head_count=(F32, float("-inf")),
            llama__rope__freq_base=(F32, float("nan")),
            llama__context_length=(F32, 2048.0),
        ))

        assert arch.block_count == 0
        assert arch.embedding_length == 0
        assert arch.head_count == 0
        assert arch.head_dim == 0
        assert arch.rope_freq_base == 0.0
        assert arch.file_type is None
        assert arch.context_length == 2048

    def test_empty_metadata(self):
        arch = extract_arch_info(MetadataTable())

        assert arch == ArchitectureInfo()
        assert arch.architecture == "unknown"
        assert arch.name == "Unknown Model"

    def test_kv_heads_and_moe(self):
        arch = extract_arch_info(table(
            general__architecture=(STR, "mixtral"),
            mixtral__attention__head_count=(U32, 32),
            mixtral__attention__head_count_kv=(U32, 8),
            mixtral__embedding_length=(U32, 4096),
            mixtral__expert_count=(U32, 8),
            mixtral__expert_used_count=(U32, 2),
        ))

        assert arch.is_gqa
        assert arch.is_moe
        assert arch.head_dim == 128
        assert arch.model_type == "MoE"

    def test_explicit_vocab_size(self):
        arch = extract_arch_info(table(general__architecture=(STR, "llama"), llama__vocab_size=(U32, 5)))

        assert arch.vocab_size == 5

    def test_idempotent(self, tiny_source):
        metadata = read_header(tiny_source).metadata

        assert extract_arch_info(metadata) == extract_arch_info(metadata)


class TestNames:
    @pytest.mark.parametrize("file_type, expected", [
        (LlamaFileType.MOSTLY_Q4_K_M, "Q4_K_M"),
        (LlamaFileType.ALL_F32, "F32"),
        (LlamaFileType.MOSTLY_F16, "F16"),
        (9999, "Type 9999"),
        (None, "unknown"),
    ])
    def test_file_type_name(self, file_type, expected):
        assert file_type_name(file_type) == expected

    @pytest.mark.parametrize("count, expected", [
        (999, "999"),
        (1_500, "1.5K"),
        (7_240_000, "7.2M"),
        (7_200_000_000, "7.2B"),
        (1_100_000_000_000, "1.1T"),
    ])
    def test_format_parameter_count(self, count, expected):
        assert format_parameter_count(count) == expected

    def test_model_type(self):
        assert ArchitectureInfo(head_count=8, head_count_kv=8).model_type == "Dense"
        assert ArchitectureInfo(head_count=8, head_count_kv=2).model_type == "Dense (GQA)"


class TestDescribeModel:
    def test_summary(self, tiny_source):
        header = read_header(tiny_source)
        arch = extract_arch_info(header.metadata)
        info = describe_model(header, arch, tiny_source.size)

        assert info["parameter_count"] == sum(t.n_elements for t in header.tensors)
        assert info["tensor_count"] == header.tensor_count
        assert info["layers"] == 2
        assert info["model_type"] == "Dense"
        assert info["file_size"] == tiny_source.size
        assert "expert_count" not in info

    def test_type_distribution(self, tiny_source):
        header = read_header(tiny_source)

        assert tensor_type_distribution(header.tensors) == {"F32": header.tensor_count}
