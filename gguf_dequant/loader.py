# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)
import logging
import gguf

from .errors import UnknownFormat, UnsupportedFormat
from .formats import lookup_name
from .materialize import TensorDescriptor

ORIG_SHAPE_KEY = "comfy.gguf.orig_shape."

# GGML types sharing a registry name but not its block layout
# (GGML Q8_1 is d:f32, s:f32, qs:int8[32], 40 bytes per block)
GGML_LAYOUT_MISMATCH = {"Q8_1"}

def get_orig_shape(reader, tensor_name):
    field_key = f"{ORIG_SHAPE_KEY}{tensor_name}"
    field = reader.get_field(field_key)
    if field is None:
        return None
    # converters record the pre-reshape shape of 5D+ tensors here
    if len(field.types) != 2 or field.types[0] != gguf.GGUFValueType.ARRAY or field.types[1] != gguf.GGUFValueType.INT32:
        raise TypeError(f"Bad original shape metadata for {field_key}: Expected ARRAY of INT32, got {field.types}")
    return tuple(int(field.parts[part_idx][0]) for part_idx in field.data)

def get_field(reader, field_name, field_type):
    field = reader.get_field(field_name)
    if field is None:
        return None
    elif field_type == str:
        # extra check here as this is used for checking arch string
        if len(field.types) != 1 or field.types[0] != gguf.GGUFValueType.STRING:
            raise TypeError(f"Bad type for GGUF {field_name} key: expected string, got {field.types!r}")
        return str(field.parts[field.data[-1]], encoding="utf-8")
    elif field_type in [int, float, bool]:
        return field_type(field.parts[field.data[-1]][0])
    else:
        raise TypeError(f"Unknown field type {field_type}")

def format_for_tensor(tensor):
    """
    Map the GGML type of a reader tensor onto the registry by name,
    since GGML numbering and the registry ids are not the same for every type
    """
    qtype = tensor.tensor_type
    name = getattr(qtype, "name", None)
    if name is None:
        raise UnknownFormat(f"Unknown GGML tensor type {qtype!r}", tensor_name=tensor.name, format_id=int(qtype))
    if name in GGML_LAYOUT_MISMATCH:
        raise UnsupportedFormat(f"GGML tensor type {name} uses a different block layout than the {name} decoder", tensor_name=tensor.name, format_id=int(qtype))
    try:
        return lookup_name(name, tensor_name=tensor.name)
    except UnknownFormat:
        raise UnknownFormat(f"GGML tensor type {name} has no decoder", tensor_name=tensor.name, format_id=int(qtype)) from None

def tensor_descriptor(tensor, name=None, reader=None):
    fmt = format_for_tensor(tensor)
    shape = get_orig_shape(reader, tensor.name) if reader is not None else None
    if shape is None:
        # GGML stores the fastest moving dimension first
        shape = tuple(int(v) for v in reversed(tensor.shape))
    return TensorDescriptor(
        name=tensor.name if name is None else name,
        format_id=fmt.id,
        shape=shape,
        byte_offset=int(tensor.data_offset),
        byte_length=int(tensor.n_bytes),
    )

def gguf_tensor_loader(path, handle_prefix=None, reader=None):
    """
    Read tensor descriptors plus byte views into the memory mapped file
    """
    if reader is None:
        reader = gguf.GGUFReader(path)

    # filter and strip prefix
    has_prefix = False
    if handle_prefix is not None:
        prefix_len = len(handle_prefix)
        tensor_names = set(tensor.name for tensor in reader.tensors)
        has_prefix = any(s.startswith(handle_prefix) for s in tensor_names)
        if not has_prefix:
            logging.warning(f"No tensors with prefix {handle_prefix!r} in {path}, loading all tensors")

    arch_str = get_field(reader, "general.architecture", str)
    if arch_str is not None:
        logging.info(f"gguf arch: {arch_str}")

    tensors = []
    qtype_dict = {}
    for tensor in reader.tensors:
        sd_key = tensor.name
        if has_prefix:
            if not sd_key.startswith(handle_prefix):
                continue
            sd_key = sd_key[prefix_len:]

        descriptor = tensor_descriptor(tensor, name=sd_key, reader=reader)
        start = descriptor.byte_offset
        raw = reader.data[start:start + descriptor.byte_length] # mmap view, no copy
        tensors.append((descriptor, raw))

        # keep track of loaded tensor types
        tensor_type_str = getattr(tensor.tensor_type, "name", repr(tensor.tensor_type))
        qtype_dict[tensor_type_str] = qtype_dict.get(tensor_type_str, 0) + 1

    # print loaded tensor type counts
    logging.info("gguf qtypes: " + ", ".join(f"{k} ({v})" for k, v in qtype_dict.items()))
    return tensors
