# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)

class DecodeError(Exception):
    """Base class for errors raised while decoding a tensor payload"""
    def __init__(self, message, tensor_name=None, format_id=None):
        self.tensor_name = tensor_name
        self.format_id = format_id
        context = []
        if tensor_name is not None:
            context.append(f"tensor={tensor_name!r}")
        if format_id is not None:
            context.append(f"format={format_id}")
        if context:
            message = f"{message} [{', '.join(context)}]"
        super().__init__(message)

class UnknownFormat(DecodeError):
    """Format identifier is not in the registry"""

class UnsupportedFormat(DecodeError):
    """Format is registered but nothing can decode it"""

class MalformedBlock(DecodeError):
    """A block failed an internal consistency check"""
    def __init__(self, message, tensor_name=None, format_id=None, block_index=None):
        self.block_index = block_index
        if block_index is not None:
            message = f"{message} (block {block_index})"
        super().__init__(message, tensor_name=tensor_name, format_id=format_id)

class SizeMismatch(DecodeError):
    """Buffer length disagrees with the shape/format geometry"""
    def __init__(self, message, tensor_name=None, format_id=None, expected=None, actual=None):
        self.expected = expected
        self.actual = actual
        if expected is not None or actual is not None:
            message = f"{message}: expected {expected} bytes, got {actual}"
        super().__init__(message, tensor_name=tensor_name, format_id=format_id)
