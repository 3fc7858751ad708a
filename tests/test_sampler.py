"""
Tests for weight sampling and dequantization.

Quantized payloads come from gguf.quants.quantize and are checked against
gguf.quants.dequantize.
"""

import logging
import math

import numpy as np
import pytest
from gguf import quants
from gguf.constants import GGMLQuantizationType as Q

from gguf_viz.gguf_reader import BytesSource
from gguf_viz.sampler import (
    SampleRequest,
    SamplingCancelled,
    bf16_to_float,
    gather_blocks,
    half_to_float,
    is_decoded,
    sample_indices,
    sample_tensor,
    sample_tensors,
)


class TestHalfFloat:
    @pytest.mark.parametrize("bits, expected", [
        (0x3C00, 1.0),
        (0xC000, -2.0),
        (0x0000, 0.0),
        (0x3555, 0.333251953125),
        (0x0001, 2.0 ** -24),
        (0x7BFF, 65504.0),
    ])
    def test_patterns(self, bits, expected):
        assert half_to_float(bits) == expected

    def test_infinities_and_nan(self):
        assert half_to_float(0x7C00) == math.inf
        assert half_to_float(0xFC00) == -math.inf
        assert math.isnan(half_to_float(0x7E00))

    def test_negative_zero(self):
        value = half_to_float(0x8000)
        assert value == 0.0 and math.copysign(1.0, value) == -1.0

    def test_all_patterns_match_numpy(self):
        bits = np.arange(1 << 16, dtype=np.uint16)

        np.testing.assert_array_equal(half_to_float(bits), bits.view(np.float16).astype(np.float32))

    def test_bfloat16(self):
        np.testing.assert_array_equal(
            bf16_to_float(np.array([0x3F80, 0xC040, 0x0000], dtype=np.uint16)),
            np.array([1.0, -3.0, 0.0], dtype=np.float32),
        )


def test_sample_indices():
    np.testing.assert_array_equal(sample_indices(10, 4), [0, 2, 5, 7])
    np.testing.assert_array_equal(sample_indices(3, 6), [0, 0, 1, 1, 2, 2])
    assert len(sample_indices(10, 0)) == 0


def test_sample_indices_large_offsets():
    n = 3 * 2**40
    idx = sample_indices(n, 3)

    assert idx.tolist() == [0, 2**40, 2 * 2**40]


class TestPlainFormats:
    @pytest.mark.parametrize("ggml_type, dtype", [
        (Q.F32, "<f4"),
        (Q.F64, "<f8"),
        (Q.I8, "i1"),
        (Q.I16, "<i2"),
        (Q.I32, "<i4"),
    ])
    def test_direct_read(self, make_tensor, ggml_type, dtype):
        data = (np.arange(100) - 50).astype(dtype)
        tensor = make_tensor("t", (100,), ggml_type)

        values = sample_tensor(BytesSource(data.tobytes()), 0, tensor, 10)

        assert values.dtype == np.float32
        np.testing.assert_array_equal(values, data[::10].astype(np.float32))

    def test_f16(self, make_tensor):
        data = np.linspace(-2, 2, 64).astype(np.float16)
        tensor = make_tensor("t", (16, 4), Q.F16)

        values = sample_tensor(BytesSource(data.tobytes()), 0, tensor, 64)

        np.testing.assert_array_equal(values, data.astype(np.float32))

    def test_bf16(self, make_tensor):
        data = np.array([1.0, -3.0, 0.5, 2.0], dtype=np.float32)
        raw = (data.view(np.uint32) >> 16).astype("<u2")
        tensor = make_tensor("t", (4,), Q.BF16)

        np.testing.assert_array_equal(sample_tensor(BytesSource(raw.tobytes()), 0, tensor, 4), data)

    def test_count_is_capped_at_element_count(self, make_tensor):
        data = np.arange(10, dtype=np.float32)
        tensor = make_tensor("t", (10,))

        values = sample_tensor(BytesSource(data.tobytes()), 0, tensor, 1000)

        np.testing.assert_array_equal(values, data)

    def test_honors_data_and_tensor_offsets(self, make_tensor):
        data = np.arange(8, dtype=np.float32)
        source = BytesSource(b"\xff" * 64 + b"\x00" * 32 + data.tobytes())
        tensor = make_tensor("t", (8,), offset=32)

        np.testing.assert_array_equal(sample_tensor(source, 64, tensor, 8), data)

    def test_zero_count(self, make_tensor):
        tensor = make_tensor("t", (8,))

        assert len(sample_tensor(BytesSource(b"\x00" * 32), 0, tensor, 0)) == 0


QUANTIZED = [Q.Q8_0, Q.Q4_0, Q.Q4_1, Q.Q5_0, Q.Q5_1]


class TestBlockFormats:
    @pytest.fixture
    def weights(self):
        return np.random.default_rng(7).standard_normal((4, 128)).astype(np.float32)

    @pytest.mark.parametrize("qtype", QUANTIZED)
    def test_matches_reference_dequantize(self, make_tensor, weights, qtype):
        packed = quants.quantize(weights, qtype)
        reference = quants.dequantize(packed, qtype).reshape(-1)
        tensor = make_tensor("t", (128, 4), qtype)

        values = sample_tensor(BytesSource(packed.tobytes()), 0, tensor, 37)

        assert len(values) == 37
        np.testing.assert_allclose(values, reference[sample_indices(512, 37)], rtol=1e-6, atol=1e-6)

    @pytest.mark.parametrize("qtype", QUANTIZED)
    def test_every_element(self, make_tensor, weights, qtype):
        packed = quants.quantize(weights, qtype)
        reference = quants.dequantize(packed, qtype).reshape(-1)
        tensor = make_tensor("t", (128, 4), qtype)

        values = sample_tensor(BytesSource(packed.tobytes()), 0, tensor, 512)

        np.testing.assert_allclose(values, reference, rtol=1e-6, atol=1e-6)

    def test_q4_0_nibble_order(self, make_tensor):
        # scale 1.0; qs[j] low nibble -> element j, high nibble -> element j + 16
        qs = bytes(j | ((15 - j) << 4) for j in range(16))
        block = np.float16(1.0).tobytes() + qs
        tensor = make_tensor("t", (32,), Q.Q4_0)

        values = sample_tensor(BytesSource(block), 0, tensor, 32)

        assert values[:16].tolist() == [float(j - 8) for j in range(16)]
        assert values[16:].tolist() == [float(7 - j) for j in range(16)]

    def test_q8_0_block(self, make_tensor):
        qs = np.arange(-16, 16, dtype=np.int8)
        block = np.float16(0.5).tobytes() + qs.tobytes()
        tensor = make_tensor("t", (32,), Q.Q8_0)

        values = sample_tensor(BytesSource(block), 0, tensor, 32)

        np.testing.assert_array_equal(values, qs.astype(np.float32) * 0.5)


class TestByteFallback:
    def test_unsupported_encoding_samples_bytes(self, make_tensor):
        tensor = make_tensor("t", (256,), Q.Q4_K)
        size = tensor.data_size
        raw = np.arange(size, dtype=np.uint8)

        values = sample_tensor(BytesSource(raw.tobytes()), 0, tensor, 10)

        stride = size // 10
        expected = raw[::stride][:10].view(np.int8).astype(np.float32) / 128.0
        assert not is_decoded(Q.Q4_K)
        np.testing.assert_array_equal(values, expected)
        assert np.all((values >= -1.0) & (values < 1.0))

    def test_unknown_encoding_tag(self, make_tensor):
        tensor = make_tensor("t", (8,), 250)

        values = sample_tensor(BytesSource(bytes(range(32))), 0, tensor, 4)

        assert len(values) == 4


class TestGatherBlocks:
    def test_distant_blocks_are_read_separately(self, spy):
        source = spy(BytesSource(bytes(6000 * 2)))
        blocks = np.array([0, 1, 5000, 5001])

        out = gather_blocks(source, 0, blocks, 2, max_batch_blocks=4096)

        assert out.shape == (4, 2)
        assert source.reads == [(0, 4), (10000, 4)]

    def test_batch_limit_of_one_reads_each_block(self, spy):
        source = spy(BytesSource(bytes(range(10))))

        out = gather_blocks(source, 0, np.array([1, 3, 4]), 2, max_batch_blocks=1)

        assert out.tolist() == [[2, 3], [6, 7], [8, 9]]
        assert len(source.reads) == 3

    def test_close_blocks_share_one_read(self, spy):
        source = spy(BytesSource(bytes(range(20))))

        out = gather_blocks(source, 0, np.array([0, 2, 9]), 2)

        assert out.tolist() == [[0, 1], [4, 5], [18, 19]]
        assert source.reads == [(0, 20)]


class TestSampleTensors:
    def _model(self, make_tensor):
        a = np.arange(16, dtype=np.float32)
        b = -np.arange(32, dtype=np.float32)
        source = BytesSource(a.tobytes() + b.tobytes())
        tensors = [
            make_tensor("a", (16,), offset=0),
            make_tensor("b", (32,), offset=64),
            make_tensor("corrupt", (32,), offset=1 << 30),
        ]
        return source, tensors, a, b

    def test_results_keep_request_order(self, make_tensor):
        source, tensors, a, b = self._model(make_tensor)
        requests = [SampleRequest(t, 8) for t in tensors[:2]]

        results = sample_tensors(source, 0, requests, max_workers=2)

        np.testing.assert_array_equal(results[0], a[::2])
        np.testing.assert_array_equal(results[1], b[::4])

    def test_failed_tensor_yields_none(self, make_tensor, caplog):
        source, tensors, a, _ = self._model(make_tensor)

        with caplog.at_level(logging.WARNING):
            results = sample_tensors(source, 0, [SampleRequest(t, 8) for t in tensors])

        assert results[2] is None
        np.testing.assert_array_equal(results[0], a[::2])
        assert "corrupt" in caplog.text

    def test_progress(self, make_tensor):
        source, tensors, _, _ = self._model(make_tensor)
        calls = []

        sample_tensors(source, 0, [SampleRequest(t, 4) for t in tensors], on_progress=lambda *a: calls.append(a))

        assert [c[1] for c in calls] == [1, 2, 3]
        assert all(c[0] == "sampling" and c[2] == 3 for c in calls)

    def test_cancellation(self, make_tensor):
        source, tensors, _, _ = self._model(make_tensor)

        with pytest.raises(SamplingCancelled):
            sample_tensors(source, 0, [SampleRequest(t, 4) for t in tensors], is_cancelled=lambda: True)

    def test_empty(self):
        assert sample_tensors(BytesSource(b""), 0, []) == []
