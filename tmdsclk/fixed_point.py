'''Unsigned binary fixed point, as used by the divider registers.

A FixedPoint holds a raw integer and the number of fractional bits; the value
is raw / 2**frac_bits.  The integer and fractional register fields are just
the two halves of raw.  Conversion from an exact ratio rounds half up, which
is what the hardware vendor's tools do.'''

from dataclasses import dataclass
from fractions import Fraction

@dataclass(frozen=True)
class FixedPoint:
    raw: int
    frac_bits: int

    @staticmethod
    def from_ratio(num: int, den: int, frac_bits: int) -> 'FixedPoint':
        '''Round num / den to frac_bits fractional bits.  Exact integer
        arithmetic, so there is no intermediate overflow or float error.'''
        assert num >= 0 and den > 0
        return FixedPoint(((num << frac_bits + 1) + den) // (2 * den),
                          frac_bits)

    @staticmethod
    def from_parts(integer: int, fraction: int, frac_bits: int) -> 'FixedPoint':
        assert 0 <= fraction < 1 << frac_bits
        return FixedPoint(integer << frac_bits | fraction, frac_bits)

    @property
    def scale(self) -> int:
        return 1 << self.frac_bits

    @property
    def integer(self) -> int:
        return self.raw >> self.frac_bits

    @property
    def fraction(self) -> int:
        return self.raw & self.scale - 1

    def value(self) -> Fraction:
        return Fraction(self.raw, self.scale)

    def __float__(self) -> float:
        return self.raw / self.scale

    def __str__(self) -> str:
        return f'{self.integer} + {self.fraction}/2^{self.frac_bits}'

def test_from_ratio() -> None:
    # 3.564GHz / 80MHz = 44.55
    fp = FixedPoint.from_ratio(3_564_000_000, 80_000_000, 21)
    assert fp.integer == 44
    assert fp.fraction == 1153434     # round(0.55 * 2^21) = round(1153433.6)
    assert abs(fp.value() - Fraction(891, 20)) <= Fraction(1, 2 << 21)

def test_round_half_up() -> None:
    # 1/8 at 2 fractional bits is exactly half an LSB.
    assert FixedPoint.from_ratio(1, 8, 2).raw == 1
    assert FixedPoint.from_ratio(1, 9, 2).raw == 0
    # Rounding can carry into the integer part.
    fp = FixedPoint.from_ratio(2**21 * 2 - 1, 2**21, 4)
    assert fp.integer == 2 and fp.fraction == 0

def test_parts() -> None:
    fp = FixedPoint.from_parts(13, 1 << 27, 28)
    assert fp.value() == Fraction(27, 2)
    assert float(fp) == 13.5
    assert str(fp) == '13 + 134217728/2^28'
    assert fp.scale == 1 << 28
