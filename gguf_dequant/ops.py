# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)
import logging
import torch

from .formats import ElementType, lookup
from .loader import gguf_tensor_loader
from .materialize import materialize, materialize_many

TORCH_DTYPES = {
    ElementType.FLOAT32: torch.float32,
    ElementType.FLOAT16: torch.float16,
    ElementType.INT32: torch.int32,
    ElementType.INT8: torch.int8,
}

TARGET_DTYPES = {torch.float32, torch.float16, torch.bfloat16}

# plain integer tensors are never cast to a float target
INTEGER_TYPES = {ElementType.INT32, ElementType.INT8}

def default_dtype(decoded):
    """
    Unblocked formats keep their storage type, dequantized values stay float32
    """
    if lookup(decoded.format_id).is_blocked:
        return torch.float32
    return TORCH_DTYPES[decoded.element_type]

def to_torch(decoded, dtype=None):
    """
    Build a torch tensor from a decoded value array
    """
    if dtype is not None and dtype not in TARGET_DTYPES:
        raise TypeError(f"Unsupported target dtype {dtype} for {decoded.name!r}")

    tensor = torch.from_numpy(decoded.values).reshape(decoded.shape)
    if dtype is None or (decoded.element_type in INTEGER_TYPES and not lookup(decoded.format_id).is_blocked):
        dtype = default_dtype(decoded)
    return tensor.to(dtype)

def dequantize_tensor(descriptor, raw, dtype=None, strict=True):
    if descriptor is None:
        return None
    return to_torch(materialize(descriptor, raw, strict=strict), dtype=dtype)

def load_state_dict(path, dtype=None, handle_prefix=None, strict=True, max_workers=None):
    """
    Dequantize every tensor in a GGUF file into a plain state dict
    """
    tensors = gguf_tensor_loader(path, handle_prefix=handle_prefix)
    decoded = materialize_many(tensors, strict=strict, max_workers=max_workers)

    state_dict = {}
    for item in decoded:
        if item.name in state_dict:
            logging.warning(f"Duplicate tensor key {item.name!r}, keeping last")
        state_dict[item.name] = to_torch(item, dtype=dtype)
    return state_dict
