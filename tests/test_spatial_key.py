"""Tests for Morton key encoding."""

import pytest

from knotwork.quantization import QuantizationParams
from knotwork.spatial_key import (
    deinterleave_bits,
    decode_key,
    encode_embedding,
    interleave_bits,
    key_range,
    key_to_int,
    key_width,
)


@pytest.fixture
def small_params():
    """Two dimensions, four bits each, unit bounds."""
    return QuantizationParams(
        reduced_dims=2, bits=4, mins=(0.0, 0.0), maxs=(1.0, 1.0), reduction="first",
    )


class TestInterleave:

    def test_dimension_zero_bit_zero_is_least_significant(self):
        assert interleave_bits([1, 0], bits=2) == 0b01
        assert interleave_bits([0, 1], bits=2) == 0b10
        assert interleave_bits([0b10, 0], bits=2) == 0b100

    def test_deinterleave_inverts(self):
        values = [5, 0, 9, 15]
        key = interleave_bits(values, bits=4)
        assert deinterleave_bits(key, dims=4, bits=4) == values


class TestEncode:

    def test_corners(self, small_params):
        assert encode_embedding([1.0, 0.0], small_params) == "55"
        assert encode_embedding([0.0, 1.0], small_params) == "aa"
        assert encode_embedding([1.0, 1.0], small_params) == "ff"
        assert encode_embedding([0.0, 0.0], small_params) == "00"

    def test_quantizes_by_rounding(self, small_params):
        # 0.4 * 15 rounds to 6 = 0b0110, dimension 0 bits land on key bits 2 and 4
        assert encode_embedding([0.4, 0.0], small_params) == "14"

    def test_out_of_bounds_clamps(self, small_params):
        assert encode_embedding([-3.0, 7.0], small_params) == encode_embedding([0.0, 1.0], small_params)

    def test_fixed_width_lowercase_hex(self):
        params = QuantizationParams(
            reduced_dims=8, bits=16, mins=(0.0,) * 8, maxs=(1.0,) * 8, reduction="first",
        )
        assert key_width(params) == 32
        low = encode_embedding([0.0] * 8, params)
        high = encode_embedding([1.0] * 8, params)
        assert low == "0" * 32
        assert high == "f" * 32
        mid = encode_embedding([0.3, 0.9, 0.1, 0.5, 0.7, 0.2, 0.8, 0.6], params)
        assert len(mid) == 32
        assert mid == mid.lower()
        assert low < mid < high

    def test_deterministic(self, small_params):
        assert encode_embedding([0.25, 0.75], small_params) == encode_embedding([0.25, 0.75], small_params)

    def test_decode_is_approximate(self, small_params):
        point = decode_key(encode_embedding([0.4, 0.6], small_params), small_params)
        assert point[0] == pytest.approx(0.4, abs=1 / 15)
        assert point[1] == pytest.approx(0.6, abs=1 / 15)


class TestKeyRange:

    def test_saturates_at_zero(self, small_params):
        assert key_range("00", 5, small_params) == ("00", "05")

    def test_saturates_at_max(self, small_params):
        assert key_range("fe", 5, small_params) == ("f9", "ff")

    def test_interior(self, small_params):
        lo, hi = key_range("80", 16, small_params)
        assert key_to_int(lo) == 0x70
        assert key_to_int(hi) == 0x90
