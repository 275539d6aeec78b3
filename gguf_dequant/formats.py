# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)
from __future__ import annotations

import numbers
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import NamedTuple

from .errors import UnknownFormat

QK_K = 256
K_SCALE_SIZE = 12

class ElementType(Enum):
    FLOAT32 = "float32"
    FLOAT16 = "float16"
    INT32 = "int32"
    INT8 = "int8"
    INT4 = "int4"
    TERNARY = "ternary"

class QuantFormat(IntEnum):
    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q4_1 = 3
    Q5_0 = 6
    Q5_1 = 7
    Q8_0 = 8
    Q8_1 = 9
    Q2_K = 10
    Q3_K = 11
    Q4_K = 12
    Q5_K = 13
    Q6_K = 14
    Q8_K = 15
    I32 = 16
    I8 = 24

class FormatDescriptor(NamedTuple):
    format: QuantFormat
    element_type: ElementType
    block_size: int
    type_size: int
    description: str

    @property
    def id(self) -> int:
        return int(self.format)

    @property
    def name(self) -> str:
        return self.format.name

    @property
    def is_blocked(self) -> bool:
        return self.block_size > 1

    def byte_length(self, n_elements: int) -> int | None:
        """Encoded size of n_elements, None if that is not a whole number of blocks"""
        if n_elements % self.block_size != 0:
            return None
        return n_elements // self.block_size * self.type_size

QF = QuantFormat
ET = ElementType

def _entry(fmt, element_type, block_size, type_size, description):
    return FormatDescriptor(fmt, element_type, block_size, type_size, description)

FORMATS: MappingProxyType[int, FormatDescriptor] = MappingProxyType({
    d.id: d for d in (
        _entry(QF.F32,  ET.FLOAT32, 1,    4, "32-bit float"),
        _entry(QF.F16,  ET.FLOAT16, 1,    2, "16-bit float"),
        _entry(QF.Q4_0, ET.INT4,    32,  18, "4-bit quantized, block size 32"),
        _entry(QF.Q4_1, ET.INT4,    32,  20, "4-bit quantized with scale and bias, block size 32"),
        _entry(QF.Q5_0, ET.INT8,    32,  22, "5-bit quantized (packed in 8-bit), block size 32"),
        _entry(QF.Q5_1, ET.INT8,    32,  24, "5-bit quantized with scale and bias (packed in 8-bit), block size 32"),
        _entry(QF.Q8_0, ET.INT8,    32,  34, "8-bit quantized, block size 32"),
        _entry(QF.Q8_1, ET.INT8,    32,  36, "8-bit quantized with scale and bias, block size 32"),
        _entry(QF.Q2_K, ET.TERNARY, QK_K, 84, "2-bit quantized (ternary), block size 256"),
        _entry(QF.Q3_K, ET.INT4,    QK_K, 110, "3-bit quantized (packed in 4-bit), block size 256"),
        _entry(QF.Q4_K, ET.INT4,    QK_K, 144, "4-bit quantized, block size 256"),
        _entry(QF.Q5_K, ET.INT8,    QK_K, 176, "5-bit quantized (packed in 8-bit), block size 256"),
        _entry(QF.Q6_K, ET.INT8,    QK_K, 210, "6-bit quantized (packed in 8-bit), block size 256"),
        _entry(QF.Q8_K, ET.INT8,    QK_K, 292, "8-bit quantized, block size 256"),
        _entry(QF.I32,  ET.INT32,   1,    4, "32-bit integer"),
        _entry(QF.I8,   ET.INT8,    1,    1, "8-bit integer"),
    )
})

def lookup(format_id, tensor_name=None) -> FormatDescriptor:
    """
    Find the descriptor for a numeric format identifier
    """
    # bools and floats are not format ids, even though int() accepts them
    if isinstance(format_id, numbers.Integral) and not isinstance(format_id, bool):
        fmt = FORMATS.get(int(format_id))
        if fmt is not None:
            return fmt
    raise UnknownFormat(f"Unknown quantization format id {format_id!r}", tensor_name=tensor_name, format_id=format_id)

def lookup_name(name, tensor_name=None) -> FormatDescriptor:
    """
    Find the descriptor by format name (e.g. 'Q4_K'), used to map GGML types
    """
    fmt = QuantFormat.__members__.get(str(name).upper())
    if fmt is None:
        raise UnknownFormat(f"Unknown quantization format {name!r}", tensor_name=tensor_name)
    return FORMATS[fmt.value]
