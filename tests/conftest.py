"""Shared fixtures: synthetic quantized blocks and small GGUF files."""

from __future__ import annotations

import numpy as np
import pytest

from gguf_dequant.formats import QuantFormat, lookup

# offsets of the half float scale/min fields inside one block
HALF_FIELDS = {
    "Q4_0": (0,),
    "Q4_1": (0, 2),
    "Q5_0": (0,),
    "Q5_1": (0, 2),
    "Q8_0": (0,),
    "Q8_1": (0, 2),
    "Q2_K": (80, 82),
    "Q3_K": (108,),
    "Q4_K": (0, 2),
    "Q5_K": (0, 2),
    "Q6_K": (208,),
}

QUANTIZED = list(HALF_FIELDS) + ["Q8_K"]


def make_blocks(name: str, n_blocks: int, rng: np.random.Generator) -> bytes:
    """Random block payload with well-formed (normal, finite) scale fields."""
    fmt = lookup(QuantFormat[name])
    blocks = rng.integers(0, 256, size=(n_blocks, fmt.type_size), dtype=np.uint8)

    if name == "Q8_K":
        d = rng.uniform(0.001, 0.1, size=(n_blocks, 1)).astype("<f4")
        blocks[:, :4] = d.view(np.uint8)
        qs = blocks[:, 4:260].view(np.int8).astype(np.int32)
        bsums = qs.reshape((n_blocks, 16, 16)).sum(axis=-1).astype("<i2")
        blocks[:, 260:] = bsums.view(np.uint8)
        return blocks.tobytes()

    for off in HALF_FIELDS[name]:
        scale = rng.uniform(0.01, 2.0, size=(n_blocks, 1)).astype("<f2")
        blocks[:, off:off + 2] = scale.view(np.uint8)
    return blocks.tobytes()


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


def write_gguf(path, tensors, arrays=None):
    """Write (name, array) or (name, array, raw_dtype) entries plus int array fields."""
    import gguf

    writer = gguf.GGUFWriter(str(path), "test")
    for key, value in (arrays or {}).items():
        writer.add_array(key, value)
    for name, data, *raw_dtype in tensors:
        writer.add_tensor(name, data, raw_dtype=raw_dtype[0] if raw_dtype else None)
    writer.write_header_to_file()
    writer.write_kv_data_to_file()
    writer.write_tensors_to_file()
    writer.close()
    return path


@pytest.fixture
def gguf_file(tmp_path, rng):
    """Small GGUF file with a mix of plain and quantized tensors."""
    import gguf

    path = tmp_path / "model.gguf"
    f32 = rng.standard_normal((4, 8)).astype(np.float32)
    f16 = rng.standard_normal((2, 8)).astype(np.float16)
    q8 = rng.standard_normal((2, 64)).astype(np.float32)
    ids = np.arange(6, dtype=np.int32)
    small = np.arange(-3, 5, dtype=np.int8)

    q8_raw = gguf.quants.quantize(q8, gguf.GGMLQuantizationType.Q8_0)
    write_gguf(path, [
        ("model.f32.weight", f32),
        ("model.f16.weight", f16),
        ("model.q8.weight", q8_raw, gguf.GGMLQuantizationType.Q8_0),
        ("model.ids", ids),
        ("extra.i8", small),
    ])

    expected = {
        "model.f32.weight": f32,
        "model.f16.weight": f16.astype(np.float32),
        "model.q8.weight": gguf.quants.dequantize(q8_raw, gguf.GGMLQuantizationType.Q8_0),
        "model.ids": ids,
        "extra.i8": small,
    }
    return path, expected
