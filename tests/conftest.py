"""
Shared fixtures: small GGUF files written with gguf.GGUFWriter and
hand-assembled headers for the malformed cases.
"""

from __future__ import annotations

import struct
from pathlib import Path

import numpy as np
import pytest
import gguf

from gguf_viz.gguf_reader import BytesSource, MemmapSource, TensorInfo
from gguf_viz.model_analyzer import ArchitectureInfo

VOCAB = 32
EMBD = 16
FFN = 64
HEADS = 4
LAYERS = 2


def dense_tensors(layers: int = LAYERS, embd: int = EMBD, ffn: int = FFN, vocab: int = VOCAB, seed: int = 0):
    """Float32 tensors of a tiny llama-style model, keyed by GGUF name (numpy shapes)."""
    rng = np.random.default_rng(seed)

    def w(*shape):
        return rng.standard_normal(shape).astype(np.float32)

    tensors = {"token_embd.weight": w(vocab, embd)}
    for i in range(layers):
        tensors.update({
            f"blk.{i}.attn_norm.weight": w(embd),
            f"blk.{i}.attn_q.weight": w(embd, embd),
            f"blk.{i}.attn_k.weight": w(embd, embd),
            f"blk.{i}.attn_v.weight": w(embd, embd),
            f"blk.{i}.attn_output.weight": w(embd, embd),
            f"blk.{i}.ffn_norm.weight": w(embd),
            f"blk.{i}.ffn_gate.weight": w(ffn, embd),
            f"blk.{i}.ffn_up.weight": w(ffn, embd),
            f"blk.{i}.ffn_down.weight": w(embd, ffn),
        })
    tensors["output_norm.weight"] = w(embd)
    tensors["output.weight"] = w(vocab, embd)
    return tensors


def write_gguf(
    path: Path,
    tensors: dict,
    arch: str = "llama",
    name: str = "tiny-test",
    block_count: int = LAYERS,
    head_count: int = HEADS,
    head_count_kv: int | None = None,
    embedding_length: int = EMBD,
    feed_forward_length: int = FFN,
    expert_count: int = 0,
    vocab: int = VOCAB,
    file_type: int | None = None,
) -> Path:
    """Write a GGUF file; tensor values are arrays or (bytes-array, raw dtype) pairs."""
    writer = gguf.GGUFWriter(str(path), arch)
    writer.add_name(name)
    writer.add_block_count(block_count)
    writer.add_context_length(128)
    writer.add_embedding_length(embedding_length)
    writer.add_feed_forward_length(feed_forward_length)
    writer.add_head_count(head_count)
    if head_count_kv is not None:
        writer.add_head_count_kv(head_count_kv)
    if expert_count:
        writer.add_expert_count(expert_count)
        writer.add_expert_used_count(2)
    writer.add_rope_freq_base(10000.0)
    if file_type is not None:
        writer.add_file_type(file_type)
    writer.add_token_list([f"tok{i}" for i in range(vocab)])

    for tensor_name, value in tensors.items():
        if isinstance(value, tuple):
            data, raw_dtype = value
            writer.add_tensor(tensor_name, data, raw_dtype=raw_dtype)
        else:
            writer.add_tensor(tensor_name, value)

    writer.write_header_to_file()
    writer.write_kv_data_to_file()
    writer.write_tensors_to_file()
    writer.close()
    return path


def gguf_string(s: str) -> bytes:
    raw = s.encode("utf-8")
    return struct.pack("<Q", len(raw)) + raw


def build_raw_header(version=3, kv=(), tensors=(), magic=gguf.GGUF_MAGIC) -> bytes:
    """
    Assemble a header byte by byte.

    ``kv`` holds ``(key, type_tag, payload_bytes)``; ``tensors`` holds
    ``(name, dims, ggml_type, offset)``.
    """
    out = struct.pack("<IIQQ", magic, version, len(tensors), len(kv))
    for key, type_tag, payload in kv:
        out += gguf_string(key) + struct.pack("<I", type_tag) + payload
    for name, dims, ggml_type, offset in tensors:
        out += gguf_string(name) + struct.pack("<I", len(dims))
        out += struct.pack(f"<{len(dims)}Q", *dims)
        out += struct.pack("<IQ", ggml_type, offset)
    return out


class SpySource:
    """Range source that records every read."""

    def __init__(self, inner):
        self.inner = inner
        self.size = inner.size
        self.reads = []

    def read(self, offset, length):
        self.reads.append((offset, length))
        return self.inner.read(offset, length)


@pytest.fixture
def tiny_model(tmp_path):
    """Path of a 2-layer, 4-head dense model with float32 tensors."""
    return write_gguf(tmp_path / "tiny.gguf", dense_tensors())


@pytest.fixture
def tiny_source(tiny_model):
    return MemmapSource(tiny_model)


@pytest.fixture
def raw_header():
    return build_raw_header


@pytest.fixture
def spy():
    return SpySource


@pytest.fixture
def dense_arch():
    return ArchitectureInfo(
        architecture="llama",
        block_count=2,
        embedding_length=16,
        feed_forward_length=64,
        head_count=4,
        head_count_kv=4,
    )


@pytest.fixture
def moe_arch():
    return ArchitectureInfo(
        architecture="mixtral",
        block_count=2,
        embedding_length=16,
        feed_forward_length=64,
        head_count=4,
        head_count_kv=4,
        expert_count=8,
        expert_used_count=2,
    )


def tensor_info(name, dims, ggml_type=gguf.GGMLQuantizationType.F32, offset=0) -> TensorInfo:
    return TensorInfo(name=name, dims=tuple(dims), ggml_type=int(ggml_type), offset=offset)


@pytest.fixture
def make_tensor():
    return tensor_info


@pytest.fixture
def dense_inventory():
    """Tensor descriptors of :func:`dense_tensors`, in file order."""
    return [tensor_info(name, reversed(value.shape)) for name, value in dense_tensors().items()]


@pytest.fixture
def bytes_source():
    return BytesSource


@pytest.fixture
def write_model():
    return write_gguf


@pytest.fixture
def model_tensors():
    return dense_tensors
