"""
Morton (Z-order) spatial keys.

An embedding is reduced, each reduced dimension quantized to B bits, and
the bits interleaved into a single D*B-bit integer. Keys are stored as
fixed-width lowercase hex so that string order equals numeric order.

Key bit ``b * D + d`` holds bit ``b`` of dimension ``d``: dimension 0's
bit 0 is the least significant key bit.
"""

from typing import Sequence

from .quantization import QuantizationParams


def key_width(params: QuantizationParams) -> int:
    """Number of hex digits in a key."""
    return (params.key_bits + 3) // 4


def max_key(params: QuantizationParams) -> int:
    return (1 << params.key_bits) - 1


def int_to_key(value: int, width: int) -> str:
    if value < 0:
        raise ValueError("Spatial keys are unsigned")
    return format(value, "x").zfill(width)


def key_to_int(key: str) -> int:
    return int(key[2:] if key.startswith("0x") else key, 16)


def quantize_reduced(reduced: Sequence[float], params: QuantizationParams) -> list[int]:
    """Normalize each value into [0, 1] against its bounds and scale to 2^B - 1."""
    levels = params.levels
    out = []
    for i, v in enumerate(reduced):
        lo, hi = params.mins[i], params.maxs[i]
        norm = (v - lo) / (hi - lo)
        norm = min(1.0, max(0.0, norm))
        out.append(int(round(norm * levels)))
    return out


def interleave_bits(values: Sequence[int], bits: int) -> int:
    dims = len(values)
    key = 0
    for b in range(bits):
        for d, v in enumerate(values):
            if (v >> b) & 1:
                key |= 1 << (b * dims + d)
    return key


def deinterleave_bits(key: int, dims: int, bits: int) -> list[int]:
    values = [0] * dims
    for b in range(bits):
        for d in range(dims):
            if (key >> (b * dims + d)) & 1:
                values[d] |= 1 << b
    return values


def encode_embedding(embedding: Sequence[float], params: QuantizationParams) -> str:
    """Compute the hex spatial key of an embedding. Deterministic for fixed params."""
    quantized = quantize_reduced(params.reduce(embedding), params)
    return int_to_key(interleave_bits(quantized, params.bits), key_width(params))


def decode_key(key: str, params: QuantizationParams) -> list[float]:
    """Approximate reduced-space point for a key. Lossy: quantization discards precision."""
    quantized = deinterleave_bits(key_to_int(key), params.reduced_dims, params.bits)
    levels = params.levels
    return [
        params.mins[i] + (q / levels) * (params.maxs[i] - params.mins[i])
        for i, q in enumerate(quantized)
    ]


def key_range(center: str, radius: int, params: QuantizationParams) -> tuple[str, str]:
    """Inclusive [center - radius, center + radius], saturating at 0 and the max key."""
    c = key_to_int(center)
    lo = max(0, c - radius)
    hi = min(max_key(params), c + radius)
    width = key_width(params)
    return int_to_key(lo, width), int_to_key(hi, width)
