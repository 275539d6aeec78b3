# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from .dequant import as_byte_array, dequantize, dequantize_functions
from .errors import SizeMismatch, UnsupportedFormat
from .formats import ElementType, FormatDescriptor, lookup
from .half import halves_to_float32

@dataclass(frozen=True)
class TensorDescriptor:
    name: str
    format_id: int
    shape: tuple[int, ...]
    byte_offset: int = 0
    byte_length: int | None = None

    def __post_init__(self):
        object.__setattr__(self, "shape", tuple(int(v) for v in self.shape))

    @property
    def volume(self) -> int:
        n = 1
        for dim in self.shape:
            n *= dim
        return n

@dataclass(frozen=True)
class DecodedValueArray:
    name: str
    format_id: int
    element_type: ElementType
    shape: tuple[int, ...]
    values: np.ndarray = field(repr=False)

    def __len__(self):
        return len(self.values)

# reinterpreted directly, no blocks
UNBLOCKED_DTYPES = {
    ElementType.FLOAT32: np.dtype("<f4"),
    ElementType.FLOAT16: np.dtype("<u2"),
    ElementType.INT32: np.dtype("<i4"),
    ElementType.INT8: np.dtype("i1"),
}

def expected_byte_length(fmt: FormatDescriptor, shape: Sequence[int]) -> int | None:
    n_elements = 1
    for dim in shape:
        n_elements *= int(dim)
    return fmt.byte_length(n_elements)

def _check_size(descriptor, fmt, data):
    if any(dim < 0 for dim in descriptor.shape):
        raise SizeMismatch(f"Negative dimension in shape {descriptor.shape}", tensor_name=descriptor.name, format_id=fmt.id)

    expected = expected_byte_length(fmt, descriptor.shape)
    if expected is None:
        raise SizeMismatch(
            f"Shape {descriptor.shape} is not a whole number of {fmt.name} blocks of {fmt.block_size}",
            tensor_name=descriptor.name, format_id=fmt.id,
        )
    if data.size != expected:
        raise SizeMismatch(f"Data size mismatch for {fmt.name} tensor", tensor_name=descriptor.name, format_id=fmt.id, expected=expected, actual=data.size)
    if descriptor.byte_length is not None and descriptor.byte_length != expected:
        raise SizeMismatch(f"Descriptor byte length disagrees with {fmt.name} geometry", tensor_name=descriptor.name, format_id=fmt.id, expected=expected, actual=descriptor.byte_length)

def _decode_unblocked(data, fmt):
    raw_dtype = UNBLOCKED_DTYPES[fmt.element_type]
    values = data.view(raw_dtype)
    if fmt.element_type == ElementType.FLOAT16:
        return halves_to_float32(values)
    return values.astype(raw_dtype.newbyteorder("="))

def materialize(descriptor: TensorDescriptor, raw, strict: bool = True) -> DecodedValueArray:
    """
    Decode the raw payload of one tensor into a flat typed array
    """
    fmt = lookup(descriptor.format_id, tensor_name=descriptor.name)
    data = as_byte_array(raw)
    _check_size(descriptor, fmt, data)

    if not fmt.is_blocked and fmt.element_type in UNBLOCKED_DTYPES:
        values = _decode_unblocked(data, fmt)
    elif fmt.format in dequantize_functions:
        values = dequantize(data, fmt, descriptor.volume, strict=strict, tensor_name=descriptor.name)
    else:
        raise UnsupportedFormat(f"No decoder for {fmt.name} ({fmt.element_type.value})", tensor_name=descriptor.name, format_id=fmt.id)

    logging.debug(f"decoded {descriptor.name} [{fmt.name}] {descriptor.shape}")
    return DecodedValueArray(
        name=descriptor.name,
        format_id=fmt.id,
        element_type=fmt.element_type,
        shape=descriptor.shape,
        values=values,
    )

def materialize_many(items: Iterable[tuple[TensorDescriptor, object]], strict: bool = True, max_workers: int | None = None) -> list[DecodedValueArray]:
    """
    Decode independent tensors in parallel, results in input order
    """
    items = list(items)
    if (max_workers is not None and max_workers <= 1) or len(items) <= 1:
        return [materialize(descriptor, raw, strict=strict) for descriptor, raw in items]
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(materialize, descriptor, raw, strict) for descriptor, raw in items]
        return [future.result() for future in futures]
