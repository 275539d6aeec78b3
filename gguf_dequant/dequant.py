# (c) City96 || Apache-2.0 (apache.org/licenses/LICENSE-2.0)
import numpy as np

from .errors import MalformedBlock, SizeMismatch, UnsupportedFormat
from .formats import FormatDescriptor, QuantFormat, QK_K, K_SCALE_SIZE, lookup
from .half import read_halves

QF = QuantFormat

def as_byte_array(data):
    """
    Flat uint8 view over a bytes-like object or numpy array (no copy when contiguous)
    """
    if isinstance(data, np.ndarray):
        return np.ascontiguousarray(data).reshape(-1).view(np.uint8)
    return np.frombuffer(data, dtype=np.uint8)

def dequantize(data, fmt, n_elements, strict=True, tensor_name=None):
    """
    Dequantize a whole number of blocks into a flat float32 array
    """
    if not isinstance(fmt, FormatDescriptor):
        fmt = lookup(fmt, tensor_name=tensor_name)

    dequantize_blocks = dequantize_functions.get(fmt.format)
    if dequantize_blocks is None:
        raise UnsupportedFormat(f"No block dequantizer for {fmt.name}", tensor_name=tensor_name, format_id=fmt.id)

    data = as_byte_array(data)
    expected = fmt.byte_length(n_elements)
    if expected is None:
        raise SizeMismatch(
            f"{n_elements} elements is not a whole number of {fmt.name} blocks of {fmt.block_size}",
            tensor_name=tensor_name, format_id=fmt.id,
        )
    if data.size != expected:
        raise SizeMismatch(f"Bad buffer size for {fmt.name}", tensor_name=tensor_name, format_id=fmt.id, expected=expected, actual=data.size)

    n_blocks = n_elements // fmt.block_size
    if n_blocks == 0:
        return np.empty(0, dtype=np.float32)
    blocks = data.reshape((n_blocks, fmt.type_size))

    validate = block_validators.get(fmt.format)
    if strict and validate is not None:
        bad = validate(blocks, fmt.block_size, fmt.type_size)
        if bad is not None:
            raise MalformedBlock(f"{fmt.name} block failed consistency check", tensor_name=tensor_name, format_id=fmt.id, block_index=bad)

    out = dequantize_blocks(blocks, fmt.block_size, fmt.type_size)
    return out.astype(np.float32, copy=False).reshape(-1)

def to_uint32(x):
    x = x.astype(np.uint32)
    return (x[:, 0] | x[:, 1] << 8 | x[:, 2] << 16 | x[:, 3] << 24).reshape((-1, 1))

def split_nibbles(qs, n_blocks, block_size):
    # low nibbles are the first half of the block, high nibbles the second
    qs = qs.reshape((n_blocks, -1, 1, block_size // 2)) >> np.array([0, 4], dtype=np.uint8).reshape((1, 1, 2, 1))
    return (qs & np.uint8(0x0F)).reshape((n_blocks, -1))

def high_bits(qh, n_blocks):
    qh = to_uint32(qh) >> np.arange(32, dtype=np.uint32).reshape((1, 32))
    return (qh & np.uint32(1)).astype(np.uint8).reshape((n_blocks, -1))

# legacy quants
# 4-bit; w=q*block_scale
def dequantize_blocks_Q4_0(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    d  = read_halves(blocks[:, :2])
    qs = split_nibbles(blocks[:, 2:], n_blocks, block_size).astype(np.int8) - np.int8(8)
    return d * qs.astype(np.float32)

# 4-bit; w=q*block_scale+block_min
def dequantize_blocks_Q4_1(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    d  = read_halves(blocks[:,  :2])
    m  = read_halves(blocks[:, 2:4])
    qs = split_nibbles(blocks[:, 4:], n_blocks, block_size).astype(np.float32)
    return (d * qs) + m

# 5-bit; w=q*block_scale
def dequantize_blocks_Q5_0(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    d  = read_halves(blocks[:, :2])
    qh = high_bits(blocks[:, 2:6], n_blocks)
    ql = split_nibbles(blocks[:, 6:], n_blocks, block_size)
    qs = (ql | (qh << np.uint8(4))).astype(np.int8) - np.int8(16)
    return d * qs.astype(np.float32)

# 5-bit; w=q*block_scale+block_min
def dequantize_blocks_Q5_1(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    d  = read_halves(blocks[:,  :2])
    m  = read_halves(blocks[:, 2:4])
    qh = high_bits(blocks[:, 4:8], n_blocks)
    ql = split_nibbles(blocks[:, 8:], n_blocks, block_size)
    qs = (ql | (qh << np.uint8(4))).astype(np.float32)
    return (d * qs) + m

# 8-bit; w=q*block_scale
def dequantize_blocks_Q8_0(blocks, block_size, type_size):
    d = read_halves(blocks[:, :2])
    x = blocks[:, 2:].view(np.int8).astype(np.float32)
    return x * d

# 8-bit unsigned; w=q*block_scale+block_min
def dequantize_blocks_Q8_1(blocks, block_size, type_size):
    d = read_halves(blocks[:,  :2])
    m = read_halves(blocks[:, 2:4])
    x = blocks[:, 4:].astype(np.float32)
    return (d * x) + m

# k quants
def dequantize_blocks_Q2_K(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    scales = blocks[:, :QK_K // 16]
    qs     = blocks[:, QK_K // 16:QK_K // 16 + QK_K // 4]
    d      = read_halves(blocks[:, -4:-2])
    dmin   = read_halves(blocks[:, -2:])

    # (n_blocks, 16, 1)
    dl = (d * (scales & np.uint8(0x0F)).astype(np.float32)).reshape((n_blocks, QK_K // 16, 1))
    ml = (dmin * (scales >> np.uint8(4)).astype(np.float32)).reshape((n_blocks, QK_K // 16, 1))

    shift = np.array([0, 2, 4, 6], dtype=np.uint8).reshape((1, 1, 4, 1))
    qs = (qs.reshape((n_blocks, -1, 1, 32)) >> shift) & np.uint8(3)
    qs = qs.reshape((n_blocks, QK_K // 16, 16)).astype(np.float32)

    return (dl * qs - ml).reshape((n_blocks, QK_K))

def dequantize_blocks_Q3_K(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    hmask  = blocks[:, :QK_K // 8]
    qs     = blocks[:, QK_K // 8:QK_K // 8 + QK_K // 4]
    scales = blocks[:, QK_K // 8 + QK_K // 4:-2]
    d      = read_halves(blocks[:, -2:])

    # 6-bit scales: low nibbles in bytes 0-7, high pairs in bytes 8-11
    #  0: IIIIAAAA   8: MMIIEEAA
    #  1: JJJJBBBB   9: NNJJFFBB
    #  ...          11: PPLLHHDD
    lscales = scales[:, :8].reshape((n_blocks, 1, 8)) >> np.array([0, 4], dtype=np.uint8).reshape((1, 2, 1))
    lscales = lscales.reshape((n_blocks, 16))
    hscales = scales[:, 8:].reshape((n_blocks, 1, 4)) >> np.array([0, 2, 4, 6], dtype=np.uint8).reshape((1, 4, 1))
    hscales = hscales.reshape((n_blocks, 16))
    scales = (lscales & np.uint8(0x0F)) | ((hscales & np.uint8(0x03)) << np.uint8(4))
    scales = (scales.astype(np.int8) - np.int8(32)).astype(np.float32)

    dl = (d * scales).reshape((n_blocks, 16, 1))

    ql = qs.reshape((n_blocks, -1, 1, 32)) >> np.array([0, 2, 4, 6], dtype=np.uint8).reshape((1, 1, 4, 1))
    qh = hmask.reshape((n_blocks, -1, 1, 32)) >> np.arange(8, dtype=np.uint8).reshape((1, 1, 8, 1))
    ql = ql.reshape((n_blocks, 16, QK_K // 16)) & np.uint8(3)
    qh = qh.reshape((n_blocks, 16, QK_K // 16)) & np.uint8(1)
    qh = qh ^ np.uint8(1) # a set mask bit means no offset
    q = (ql.astype(np.int8) - (qh << np.uint8(2)).astype(np.int8)).astype(np.float32)

    return (dl * q).reshape((n_blocks, QK_K))

def get_scale_min(scales):
    """
    Unpack the 8 pairs of 6-bit (scale, min) shared by Q4_K and Q5_K
    """
    #  0 EEAAAAAA   4 eeaaaaaa   8 eeeeEEEE
    #  1 FFBBBBBB   5 ffbbbbbb   9 ffffFFFF
    #  2 GGCCCCCC   6 ggcccccc  10 ggggGGGG
    #  3 HHDDDDDD   7 hhdddddd  11 hhhhHHHH
    n_blocks = scales.shape[0]
    scales = scales.reshape((n_blocks, 3, 4))
    d, m, m_d = np.split(scales, 3, axis=-2)

    sc = np.concatenate([d & 0x3F, (m_d & 0x0F) | ((d >> 2) & 0x30)], axis=-1)
    mn = np.concatenate([m & 0x3F, (m_d >> 4) | ((m >> 2) & 0x30)], axis=-1)
    return (sc.reshape((n_blocks, 8)), mn.reshape((n_blocks, 8)))

def dequantize_blocks_Q4_K(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    d      = read_halves(blocks[:,  :2])
    dmin   = read_halves(blocks[:, 2:4])
    scales = blocks[:, 4:4 + K_SCALE_SIZE]
    qs     = blocks[:, 4 + K_SCALE_SIZE:]

    sc, m = get_scale_min(scales)
    d  = (d * sc.astype(np.float32)).reshape((n_blocks, -1, 1))
    dm = (dmin * m.astype(np.float32)).reshape((n_blocks, -1, 1))

    qs = qs.reshape((n_blocks, -1, 1, 32)) >> np.array([0, 4], dtype=np.uint8).reshape((1, 1, 2, 1))
    qs = (qs & np.uint8(0x0F)).reshape((n_blocks, -1, 32)).astype(np.float32)

    return (d * qs - dm).reshape((n_blocks, QK_K))

def dequantize_blocks_Q5_K(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    d      = read_halves(blocks[:,  :2])
    dmin   = read_halves(blocks[:, 2:4])
    scales = blocks[:, 4:4 + K_SCALE_SIZE]
    qh     = blocks[:, 4 + K_SCALE_SIZE:4 + K_SCALE_SIZE + QK_K // 8]
    qs     = blocks[:, 4 + K_SCALE_SIZE + QK_K // 8:]

    sc, m = get_scale_min(scales)
    d  = (d * sc.astype(np.float32)).reshape((n_blocks, -1, 1))
    dm = (dmin * m.astype(np.float32)).reshape((n_blocks, -1, 1))

    ql = qs.reshape((n_blocks, -1, 1, 32)) >> np.array([0, 4], dtype=np.uint8).reshape((1, 1, 2, 1))
    qh = qh.reshape((n_blocks, -1, 1, 32)) >> np.arange(8, dtype=np.uint8).reshape((1, 1, 8, 1))
    ql = (ql & np.uint8(0x0F)).reshape((n_blocks, -1, 32))
    qh = (qh & np.uint8(0x01)).reshape((n_blocks, -1, 32))
    q = (ql | (qh << np.uint8(4))).astype(np.float32)

    return (d * q - dm).reshape((n_blocks, QK_K))

def dequantize_blocks_Q6_K(blocks, block_size, type_size):
    n_blocks = blocks.shape[0]
    ql     = blocks[:, :QK_K // 2]
    qh     = blocks[:, QK_K // 2:QK_K // 2 + QK_K // 4]
    scales = blocks[:, QK_K // 2 + QK_K // 4:-2].view(np.int8).astype(np.float32)
    d      = read_halves(blocks[:, -2:])

    d = (d * scales).reshape((n_blocks, QK_K // 16, 1))

    ql = ql.reshape((n_blocks, -1, 1, 64)) >> np.array([0, 4], dtype=np.uint8).reshape((1, 1, 2, 1))
    ql = (ql & np.uint8(0x0F)).reshape((n_blocks, -1, 32))
    qh = qh.reshape((n_blocks, -1, 1, 32)) >> np.array([0, 2, 4, 6], dtype=np.uint8).reshape((1, 1, 4, 1))
    qh = (qh & np.uint8(0x03)).reshape((n_blocks, -1, 32))
    q = (ql | (qh << np.uint8(4))).astype(np.int8) - np.int8(32)
    q = q.reshape((n_blocks, QK_K // 16, -1)).astype(np.float32)

    return (d * q).reshape((n_blocks, QK_K))

def dequantize_blocks_Q8_K(blocks, block_size, type_size):
    # float32 super-block scale, no min
    d = np.ascontiguousarray(blocks[:, :4]).view("<f4").astype(np.float32)
    x = blocks[:, 4:4 + QK_K].view(np.int8).astype(np.float32)
    return x * d

def validate_blocks_Q8_K(blocks, block_size, type_size):
    """
    Index of the first block whose 16 group sums disagree with its codes, or None
    """
    n_blocks = blocks.shape[0]
    qs = blocks[:, 4:4 + QK_K].view(np.int8).astype(np.int32)
    bsums = np.ascontiguousarray(blocks[:, 4 + QK_K:]).view("<i2").astype(np.int32)
    sums = qs.reshape((n_blocks, QK_K // 16, 16)).sum(axis=-1)
    bad = np.flatnonzero((sums != bsums).any(axis=-1))
    return int(bad[0]) if bad.size else None

dequantize_functions = {
    QF.Q4_0: dequantize_blocks_Q4_0,
    QF.Q4_1: dequantize_blocks_Q4_1,
    QF.Q5_0: dequantize_blocks_Q5_0,
    QF.Q5_1: dequantize_blocks_Q5_1,
    QF.Q8_0: dequantize_blocks_Q8_0,
    QF.Q8_1: dequantize_blocks_Q8_1,
    QF.Q2_K: dequantize_blocks_Q2_K,
    QF.Q3_K: dequantize_blocks_Q3_K,
    QF.Q4_K: dequantize_blocks_Q4_K,
    QF.Q5_K: dequantize_blocks_Q5_K,
    QF.Q6_K: dequantize_blocks_Q6_K,
    QF.Q8_K: dequantize_blocks_Q8_K,
}

block_validators = {
    QF.Q8_K: validate_blocks_Q8_K,
}
