# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)
from .errors import DecodeError, MalformedBlock, SizeMismatch, UnknownFormat, UnsupportedFormat
from .formats import FORMATS, ElementType, FormatDescriptor, QuantFormat, lookup
from .half import half_to_float, halves_to_float32
from .materialize import DecodedValueArray, TensorDescriptor, materialize, materialize_many

__all__ = (
    "DecodeError", "MalformedBlock", "SizeMismatch", "UnknownFormat", "UnsupportedFormat",
    "FORMATS", "ElementType", "FormatDescriptor", "QuantFormat", "lookup",
    "half_to_float", "halves_to_float32",
    "DecodedValueArray", "TensorDescriptor", "materialize", "materialize_many",
)
