"""
Weight sampling from the tensor data section.

A tensor is never read in full. For ``count`` samples, sample ``i`` is the
element ``floor(i * n_elements / count)``; only the quantization blocks that
hold those elements are fetched, in contiguous batches, and only they are
dequantized.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from gguf.constants import GGMLQuantizationType

from .gguf_reader import ProgressCallback, RangeSource, TensorInfo, known_type

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_WORKERS = 8
DEFAULT_MAX_BATCH_BLOCKS = 4096

# read span of the generic byte sampler
FALLBACK_BATCH_BYTES = 256 * 1024


class SamplingCancelled(Exception):
    """Raised by :func:`sample_tensors` when its caller lost interest."""


@dataclass(frozen=True)
class SampleRequest:
    tensor: TensorInfo
    count: int


def half_to_float(bits):
    """
    Decode IEEE 754 half-precision bit patterns.

    Exponent bias 15 with an implicit leading one for normals, no leading one
    for subnormals, and infinity/NaN when the exponent is all ones. Accepts a
    scalar or an array of 16-bit patterns.
    """
    h = np.asarray(bits).astype(np.uint32)
    sign = np.where(h & 0x8000, -1.0, 1.0)
    exp = ((h >> 10) & 0x1F).astype(np.int32)
    frac = (h & 0x03FF).astype(np.float64) / 1024.0

    normal = sign * np.ldexp(1.0 + frac, exp - 15)
    subnormal = sign * np.ldexp(frac, -14)
    special = np.where(frac == 0, sign * np.inf, np.nan)

    out = np.where(exp == 0, subnormal, np.where(exp == 0x1F, special, normal)).astype(np.float32)
    return out[()] if out.ndim == 0 else out


def bf16_to_float(bits) -> np.ndarray:
    """Decode bfloat16: the pattern is the upper half of a float32."""
    h = np.asarray(bits).astype(np.uint32)
    return (h << 16).view(np.float32)


def sample_indices(n_elements: int, count: int) -> np.ndarray:
    """Evenly strided element indices: ``floor(i * n_elements / count)``."""
    if count <= 0 or n_elements <= 0:
        return np.empty(0, dtype=np.int64)
    return (np.arange(count, dtype=np.int64) * np.int64(n_elements)) // np.int64(count)


def gather_blocks(
    source: RangeSource,
    base_offset: int,
    block_indices: np.ndarray,
    type_size: int,
    max_batch_blocks: int = DEFAULT_MAX_BATCH_BLOCKS,
) -> np.ndarray:
    """
    Fetch the given blocks of a tensor.

    ``block_indices`` must be sorted and unique. Blocks are read in
    contiguous spans that start at a needed block and cover fewer than
    ``max_batch_blocks`` blocks, so bytes between distant blocks are skipped.

    Returns:
        uint8 array of shape ``(len(block_indices), type_size)``
    """
    out = np.empty((len(block_indices), type_size), dtype=np.uint8)
    max_batch_blocks = max(1, max_batch_blocks)
    i = 0
    while i < len(block_indices):
        first = int(block_indices[i])
        j = int(np.searchsorted(block_indices, first + max_batch_blocks, side="left"))
        last = int(block_indices[j - 1])

        raw = source.read(base_offset + first * type_size, (last - first + 1) * type_size)
        span = np.frombuffer(raw, dtype=np.uint8).reshape(-1, type_size)
        out[i:j] = span[block_indices[i:j] - first]
        i = j
    return out


# decoders: (blocks, inverse, pos) -> values
#   blocks:  unique blocks, uint8 (u, type_size)
#   inverse: block row of each sample
#   pos:     element position of each sample inside its block

def _plain(dtype: str) -> Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]:
    def decode(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray) -> np.ndarray:
        return blocks.view(dtype)[inverse, 0].astype(np.float32)
    return decode


def _decode_f16(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray) -> np.ndarray:
    return half_to_float(blocks.view("<u2")[inverse, 0])


def _decode_bf16(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray) -> np.ndarray:
    return bf16_to_float(blocks.view("<u2")[inverse, 0])


def _scales(blocks: np.ndarray, start: int) -> np.ndarray:
    # one f16 per block, decoded once per block
    return half_to_float(np.ascontiguousarray(blocks[:, start:start + 2]).view("<u2")[:, 0])


def _nibbles(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray, qs_start: int) -> np.ndarray:
    # element j < 16 sits in the low nibble of qs[j], element j + 16 in the high one
    packed = blocks[inverse, qs_start + pos % 16]
    return np.where(pos < 16, packed & 0x0F, packed >> 4).astype(np.int32)


def _high_bits(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray, qh_start: int) -> np.ndarray:
    qh = np.ascontiguousarray(blocks[:, qh_start:qh_start + 4]).view("<u4")[:, 0]
    return ((qh[inverse] >> pos.astype(np.uint32)) & 1).astype(np.int32)


def _decode_q8_0(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray) -> np.ndarray:
    # d: f16, qs: int8[32]
    d = _scales(blocks, 0)
    q = blocks[inverse, 2 + pos].view(np.int8).astype(np.float32)
    return d[inverse] * q


def _decode_q4_0(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray) -> np.ndarray:
    # d: f16, qs: uint8[16]
    d = _scales(blocks, 0)
    return d[inverse] * (_nibbles(blocks, inverse, pos, 2) - 8)


def _decode_q4_1(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray) -> np.ndarray:
    # d: f16, m: f16, qs: uint8[16]
    d, m = _scales(blocks, 0), _scales(blocks, 2)
    return d[inverse] * _nibbles(blocks, inverse, pos, 4) + m[inverse]


def _decode_q5_0(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray) -> np.ndarray:
    # d: f16, qh: uint32, qs: uint8[16]
    d = _scales(blocks, 0)
    q = _nibbles(blocks, inverse, pos, 6) | (_high_bits(blocks, inverse, pos, 2) << 4)
    return d[inverse] * (q - 16)


def _decode_q5_1(blocks: np.ndarray, inverse: np.ndarray, pos: np.ndarray) -> np.ndarray:
    # d: f16, m: f16, qh: uint32, qs: uint8[16]
    d, m = _scales(blocks, 0), _scales(blocks, 2)
    q = _nibbles(blocks, inverse, pos, 8) | (_high_bits(blocks, inverse, pos, 4) << 4)
    return d[inverse] * q + m[inverse]


_DECODERS = {
    GGMLQuantizationType.F32: _plain("<f4"),
    GGMLQuantizationType.F64: _plain("<f8"),
    GGMLQuantizationType.I8: _plain("i1"),
    GGMLQuantizationType.I16: _plain("<i2"),
    GGMLQuantizationType.I32: _plain("<i4"),
    GGMLQuantizationType.I64: _plain("<i8"),
    GGMLQuantizationType.F16: _decode_f16,
    GGMLQuantizationType.BF16: _decode_bf16,
    GGMLQuantizationType.Q8_0: _decode_q8_0,
    GGMLQuantizationType.Q4_0: _decode_q4_0,
    GGMLQuantizationType.Q4_1: _decode_q4_1,
    GGMLQuantizationType.Q5_0: _decode_q5_0,
    GGMLQuantizationType.Q5_1: _decode_q5_1,
}


def is_decoded(ggml_type: int) -> bool:
    """True when the encoding is dequantized, False when it is byte-sampled."""
    return known_type(ggml_type) in _DECODERS


def sample_tensor(
    source: RangeSource,
    data_offset: int,
    tensor: TensorInfo,
    sample_count: int,
    max_batch_blocks: int = DEFAULT_MAX_BATCH_BLOCKS,
) -> np.ndarray:
    """
    Sample dequantized values from one tensor.

    Args:
        source: Range source of the model file
        data_offset: Absolute offset of the tensor data section
        tensor: Tensor to sample
        sample_count: Requested number of samples, capped at the element count
        max_batch_blocks: Longest span of blocks fetched by a single read

    Returns:
        float32 array with at most ``min(sample_count, tensor.n_elements)`` values

    Raises:
        RangeReadError: the tensor's bytes lie outside the file
    """
    count = min(sample_count, tensor.n_elements)
    if count <= 0:
        return np.empty(0, dtype=np.float32)

    abs_offset = data_offset + tensor.offset
    decoder = _DECODERS.get(known_type(tensor.ggml_type))
    if decoder is None:
        return _sample_bytes(source, abs_offset, tensor.data_size, count)

    block_size, type_size = tensor.block_geometry
    elements = sample_indices(tensor.n_elements, count)
    unique, inverse = np.unique(elements // block_size, return_inverse=True)
    pos = elements % block_size

    blocks = gather_blocks(source, abs_offset, unique, type_size, max_batch_blocks)
    return decoder(blocks, inverse.reshape(-1), pos).astype(np.float32, copy=False)


def _sample_bytes(source: RangeSource, abs_offset: int, data_size: int, count: int) -> np.ndarray:
    """
    Approximate values for encodings without a decoder.

    Raw bytes at a fixed stride across the tensor's bytes are read as signed
    and scaled to [-1, 1]. This is not a dequantization: the result only
    follows the byte texture of the data and is not comparable with decoded
    tensors.
    """
    stride = max(1, data_size // count)
    n = min(count, -(-data_size // stride))
    offsets = np.arange(n, dtype=np.int64) * stride
    raw = gather_blocks(source, abs_offset, offsets, 1, FALLBACK_BATCH_BYTES)
    return raw[:, 0].view(np.int8).astype(np.float32) / 128.0


def _sample_or_none(
    source: RangeSource,
    data_offset: int,
    request: SampleRequest,
    max_batch_blocks: int,
) -> np.ndarray | None:
    try:
        return sample_tensor(source, data_offset, request.tensor, request.count, max_batch_blocks)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not sample {request.tensor.name}: {e}")
        return None


def sample_tensors(
    source: RangeSource,
    data_offset: int,
    requests: Sequence[SampleRequest],
    max_workers: int = DEFAULT_SAMPLE_WORKERS,
    max_batch_blocks: int = DEFAULT_MAX_BATCH_BLOCKS,
    on_progress: ProgressCallback | None = None,
    is_cancelled: Callable[[], bool] | None = None,
) -> list[np.ndarray | None]:
    """
    Sample many tensors with at most ``max_workers`` reads in flight.

    Results keep the order of ``requests``. A tensor that fails to sample
    gets ``None`` and does not affect the others. Progress is reported as
    ``("sampling", done, total)`` from the calling thread.

    Raises:
        SamplingCancelled: ``is_cancelled`` returned True
    """
    results: list[np.ndarray | None] = [None] * len(requests)
    if not requests:
        return results

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gguf-sample") as executor:
        futures = {
            executor.submit(_sample_or_none, source, data_offset, request, max_batch_blocks): i
            for i, request in enumerate(requests)
        }
        for done, future in enumerate(as_completed(futures), start=1):
            results[futures[future]] = future.result()
            if on_progress:
                on_progress("sampling", done, len(requests))
            if is_cancelled is not None and is_cancelled():
                for pending in futures:
                    pending.cancel()
                raise SamplingCancelled()

    return results
