# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)
import struct
import numpy as np

def half_to_float(bits):
    """
    Convert a 16-bit half float bit pattern to a float32 value
    """
    bits = int(bits) & 0xFFFF
    sign = (bits >> 15) & 0x1
    exponent = (bits >> 10) & 0x1F
    mantissa = bits & 0x3FF

    if exponent == 0 and mantissa == 0:
        out = sign << 31
    elif exponent == 0:
        # subnormals are not renormalized
        out = (sign << 31) | ((127 - 15) << 23) | (mantissa << 13)
    elif exponent == 0x1F:
        out = (sign << 31) | (0xFF << 23) | (mantissa << 13)
    else:
        out = (sign << 31) | ((exponent - 15 + 127) << 23) | (mantissa << 13)
    return struct.unpack("<f", struct.pack("<I", out))[0]

def _halves_to_float32(bits):
    h = np.asarray(bits).astype(np.uint32)
    sign = (h >> 15) & 0x1
    exponent = (h >> 10) & 0x1F
    mantissa = h & 0x3FF

    # exponent == 0 with a nonzero mantissa lands on 127-15 here as well
    exp32 = np.where(exponent == 0x1F, np.uint32(0xFF), exponent + np.uint32(127 - 15))
    exp32 = np.where((exponent == 0) & (mantissa == 0), np.uint32(0), exp32)

    out = (sign << 31) | (exp32.astype(np.uint32) << 23) | (mantissa << 13)
    return np.ascontiguousarray(out, dtype=np.uint32).view(np.float32)

# every possible input, looked up instead of recomputed per element
HALF_TABLE = _halves_to_float32(np.arange(1 << 16, dtype=np.uint32))
HALF_TABLE.setflags(write=False)

def halves_to_float32(bits):
    """
    Vectorized half_to_float. Accepts uint16 (or raw little-endian uint8 pairs
    already viewed as uint16) and returns float32 of the same shape.
    """
    bits = np.asarray(bits)
    if bits.dtype != np.uint16:
        bits = bits.astype(np.uint16)
    return HALF_TABLE[bits]

def read_halves(data):
    """
    Read little-endian half floats from a (..., 2*k) uint8 array
    """
    return halves_to_float32(np.ascontiguousarray(data).view("<u2"))
