"""Tests for the block dequantizers.

Every scheme is checked bit for bit against the scalar loops in reference.py,
and (where the gguf package ships the same layout) against gguf.quants.
"""

from __future__ import annotations

import struct

import numpy as np
import pytest

from conftest import HALF_FIELDS, QUANTIZED, make_blocks
from reference import reference_decode

from gguf_dequant.dequant import dequantize, dequantize_functions, get_scale_min
from gguf_dequant.errors import MalformedBlock, SizeMismatch, UnsupportedFormat
from gguf_dequant.formats import QuantFormat, lookup


def _fmt(name):
    return lookup(QuantFormat[name])


class TestAgainstReference:
    @pytest.mark.parametrize("name", QUANTIZED)
    def test_matches_scalar_reference(self, name, rng):
        fmt = _fmt(name)
        data = make_blocks(name, 3, rng)
        out = dequantize(data, fmt, 3 * fmt.block_size)
        expected = reference_decode(name, data, fmt.type_size)
        assert out.dtype == np.float32
        assert out.shape == (3 * fmt.block_size,)
        np.testing.assert_array_equal(out, expected)

    @pytest.mark.parametrize("name", [n for n in HALF_FIELDS if n not in ("Q8_1",)])
    def test_matches_gguf_quants(self, name, rng):
        gguf = pytest.importorskip("gguf")
        from gguf.quants import dequantize as gguf_dequantize

        fmt = _fmt(name)
        n_blocks = 16
        data = make_blocks(name, n_blocks, rng)
        ours = dequantize(data, fmt, n_blocks * fmt.block_size)
        rows = np.frombuffer(data, dtype=np.uint8).reshape((16, -1))
        theirs = gguf_dequantize(rows, gguf.GGMLQuantizationType[name]).reshape(-1)
        np.testing.assert_array_equal(ours, theirs)

    def test_every_scheme_registered(self):
        assert {fmt.name for fmt in dequantize_functions} == set(QUANTIZED)


class TestLegacyBlocks:
    def test_q4_0_alternating_codes(self):
        # scale 2.0, codes 0,15,0,15,... map to -8,7
        qs = bytes(0x00 if j % 2 == 0 else 0xFF for j in range(16))
        block = struct.pack("<H", 0x4000) + qs
        out = dequantize(block, _fmt("Q4_0"), 32)
        np.testing.assert_array_equal(out, [-16.0, 14.0] * 16)

    def test_q4_0_nibble_order(self):
        # low nibbles fill elements 0-15, high nibbles 16-31
        qs = bytes((j & 0x0F) | (((15 - j) & 0x0F) << 4) for j in range(16))
        block = struct.pack("<H", 0x3C00) + qs
        out = dequantize(block, _fmt("Q4_0"), 32)
        np.testing.assert_array_equal(out[:16], np.arange(16) - 8)
        np.testing.assert_array_equal(out[16:], (15 - np.arange(16)) - 8)

    def test_q8_0_signed_codes(self):
        codes = struct.pack("<32b", *range(-16, 16))
        block = struct.pack("<H", 0x3800) + codes # scale 0.5
        out = dequantize(block, _fmt("Q8_0"), 32)
        np.testing.assert_array_equal(out, np.arange(-16, 16) * 0.5)

    def test_q4_1_scale_and_min(self):
        qs = bytes([0x10] * 16) # low 0, high 1
        block = struct.pack("<HH", 0x4000, 0xBC00) + qs # d=2, m=-1
        out = dequantize(block, _fmt("Q4_1"), 32)
        np.testing.assert_array_equal(out, [-1.0] * 16 + [1.0] * 16)

    def test_q8_1_unsigned_codes(self):
        codes = bytes([0, 1, 255] + [2] * 29)
        block = struct.pack("<HH", 0x3C00, 0x4000) + codes # d=1, m=2
        out = dequantize(block, _fmt("Q8_1"), 32)
        np.testing.assert_array_equal(out[:3], [2.0, 3.0, 257.0])
        np.testing.assert_array_equal(out[3:], [4.0] * 29)

    def test_q5_0_high_bits(self):
        qh = struct.pack("<I", 0xFFFF0000) # fifth bit only for the second half
        block = struct.pack("<H", 0x3C00) + qh + bytes([0xFF] * 16)
        out = dequantize(block, _fmt("Q5_0"), 32)
        np.testing.assert_array_equal(out[:16], [15.0 - 16] * 16)
        np.testing.assert_array_equal(out[16:], [31.0 - 16] * 16)


class TestKQuantBlocks:
    def test_get_scale_min_low_and_high_subblocks(self):
        scales = np.zeros((1, 12), dtype=np.uint8)
        scales[0, 0] = 0b11_000101 # sc0=5, top bits of sc4=3
        scales[0, 4] = 0b01_000111 # m0=7, top bits of m4=1
        scales[0, 8] = 0b1010_0110 # sc4 low=6, m4 low=10
        sc, m = get_scale_min(scales)
        assert sc[0, 0] == 5 and m[0, 0] == 7
        assert sc[0, 4] == (6 | (3 << 4))
        assert m[0, 4] == (10 | (1 << 4))

    def test_q4_k_constant_block(self):
        block = bytearray(144)
        block[0:4] = struct.pack("<HH", 0x3C00, 0x3800) # d=1, dmin=0.5
        block[4:8] = bytes([2] * 4)  # sc 0-3
        block[8:12] = bytes([4] * 4) # m 0-3
        block[12:16] = bytes([0x42] * 4) # sc 4-7 = 2, m 4-7 = 4
        block[16:] = bytes([0x31] * 128) # low 1, high 3
        out = dequantize(bytes(block), _fmt("Q4_K"), 256).reshape((8, 32))
        # low nibble sub-blocks: 2*1 - 0.5*4, high: 2*3 - 0.5*4
        np.testing.assert_array_equal(out[0::2], np.zeros((4, 32)))
        np.testing.assert_array_equal(out[1::2], np.full((4, 32), 4.0))

    def test_q6_k_zero_codes_are_offset(self):
        block = bytearray(210)
        block[192:208] = struct.pack("<16b", *([1] * 16))
        block[208:210] = struct.pack("<H", 0x3C00)
        out = dequantize(bytes(block), _fmt("Q6_K"), 256)
        np.testing.assert_array_equal(out, np.full(256, -32.0))

    def test_q3_k_mask_bit_removes_offset(self):
        block = bytearray(110)
        block[0:32] = bytes([0xFF] * 32) # every hmask bit set
        block[32:96] = bytes([0xFF] * 64) # every 2-bit code = 3
        block[96:104] = bytes([0x11] * 8) # low nibbles 1
        block[104:108] = bytes([0xAA] * 4) # high pairs 2 -> scale 33 - 32 = 1
        block[108:110] = struct.pack("<H", 0x4000) # d=2
        out = dequantize(bytes(block), _fmt("Q3_K"), 256)
        np.testing.assert_array_equal(out, np.full(256, 6.0))

    def test_q2_k_scale_and_min_nibbles(self):
        block = bytearray(84)
        block[0:16] = bytes([0x21] * 16) # scale 1, min 2
        block[16:80] = bytes([0b11_10_01_00] * 64)
        block[80:84] = struct.pack("<HH", 0x3C00, 0x3C00)
        out = dequantize(bytes(block), _fmt("Q2_K"), 256).reshape((2, 4, 32))
        for shift_index in range(4):
            np.testing.assert_array_equal(out[:, shift_index], np.full((2, 32), shift_index - 2.0))

    def test_q8_k_float32_scale(self):
        block = bytearray(292)
        block[0:4] = struct.pack("<f", 0.25)
        block[4:260] = struct.pack("<256b", *([4] * 256))
        block[260:292] = struct.pack("<16h", *([64] * 16))
        out = dequantize(bytes(block), _fmt("Q8_K"), 256)
        np.testing.assert_array_equal(out, np.ones(256))

    def test_q8_k_bad_bsums(self, rng):
        data = bytearray(make_blocks("Q8_K", 2, rng))
        data[292 + 260] ^= 0x01 # second block, first group sum
        with pytest.raises(MalformedBlock, match="block 1"):
            dequantize(bytes(data), _fmt("Q8_K"), 512, tensor_name="t")

    def test_q8_k_bad_bsums_not_strict(self, rng):
        data = bytearray(make_blocks("Q8_K", 1, rng))
        data[260] ^= 0x01
        out = dequantize(bytes(data), _fmt("Q8_K"), 256, strict=False)
        assert out.shape == (256,)


class TestSizeChecks:
    @pytest.mark.parametrize("name", QUANTIZED)
    @pytest.mark.parametrize("delta", [-1, 1])
    def test_wrong_length(self, name, delta, rng):
        fmt = _fmt(name)
        data = make_blocks(name, 2, rng)
        data = data[:delta] if delta < 0 else data + b"\x00"
        with pytest.raises(SizeMismatch) as exc:
            dequantize(data, fmt, 2 * fmt.block_size)
        assert exc.value.expected == 2 * fmt.type_size
        assert exc.value.actual == 2 * fmt.type_size + delta

    def test_partial_block_rejected(self):
        fmt = _fmt("Q4_0")
        with pytest.raises(SizeMismatch, match="whole number"):
            dequantize(bytes(18), fmt, 16)

    def test_empty(self):
        out = dequantize(b"", _fmt("Q6_K"), 0)
        assert out.shape == (0,)
        assert out.dtype == np.float32

    def test_unblocked_format_unsupported(self):
        with pytest.raises(UnsupportedFormat):
            dequantize(bytes(4), _fmt("F32"), 1)

    def test_numpy_and_memoryview_input(self, rng):
        fmt = _fmt("Q4_K")
        data = make_blocks("Q4_K", 2, rng)
        expected = dequantize(data, fmt, 512)
        np.testing.assert_array_equal(dequantize(memoryview(data), fmt, 512), expected)
        np.testing.assert_array_equal(dequantize(np.frombuffer(data, dtype=np.uint8), fmt, 512), expected)
        np.testing.assert_array_equal(dequantize(bytearray(data), QuantFormat.Q4_K, 512), expected)
