from .plan_constants import GHz, Hz, MHz, kHz

from fractions import Fraction
from typing import NoReturn, Type

class PlanningFailed(RuntimeError):
    pass

class OutOfRange(PlanningFailed):
    '''Requested input or output frequency is outside the device limits.'''

class NoFeasibleDivider(PlanningFailed):
    '''No output divider puts the VCO inside its band.'''

class PrescalerSearchExhausted(PlanningFailed):
    '''The input path search hit the M1 limit without an acceptable pair.'''

class FieldOverflow(PlanningFailed):
    '''A computed value does not fit its register field.'''

def fail(why: str, kind: Type[PlanningFailed] = PlanningFailed) -> NoReturn:
    raise kind(why)

def ceil_div(a: int, b: int) -> int:
    return -(-a // b)

def check_width(name: str, value: int, bits: int) -> int:
    '''Return value, or raise FieldOverflow if it needs more than bits.'''
    if not 0 <= value < 1 << bits:
        fail(f'{name} = {value} does not fit in {bits} bits', FieldOverflow)
    return value

def str_to_freq(s: str) -> int:
    '''Parse a frequency to integer Hz.  With no unit, MHz is assumed.'''
    s = s.strip().lower()
    for suffix, scale in ('khz', kHz), ('mhz', MHz), ('ghz', GHz), ('hz', Hz):
        if s.endswith(suffix):
            break
        if suffix != 'hz' and s.endswith(suffix[0]):
            suffix = suffix[0]
            break
    else:
        suffix = ''
        scale = MHz

    freq = Fraction(s.removesuffix(suffix).strip()) * scale
    if freq.denominator != 1:
        raise ValueError(f'{s} is not a whole number of Hz')
    return int(freq)

# Set the name of str_to_freq to give sensible argparse help test.
str_to_freq.__name__ = 'frequency'

def freq_to_str(freq: Fraction|int, precision: int = 0) -> str:
    if abs(freq) >= GHz:
        scaled = Fraction(freq, GHz)
        suffix = 'GHz'
    elif abs(freq) >= MHz:
        scaled = Fraction(freq, MHz)
        suffix = 'MHz'
    elif abs(freq) >= kHz:
        scaled = Fraction(freq, kHz)
        suffix = 'kHz'
    else:
        scaled = Fraction(freq)
        suffix = 'Hz'

    if precision != 0:
        return f'{float(scaled):.{precision}g} {suffix}'
    if scaled.denominator == 1:
        return f'{scaled.numerator} {suffix}'
    if (1000000 * scaled).denominator == 1:
        return f'{float(scaled)} {suffix}'
    return f'{float(scaled):.9g} {suffix}'

def fraction_to_str(f: Fraction, paren: bool = True) -> str:
    if f.denominator == 1 or f < 1:
        return str(f)
    d = f.denominator
    i = f.numerator // d
    n = f.numerator % d
    if paren:
        return f'({i} + {n}/{d})'
    else:
        return f'{i} + {n}/{d}'

def test_str_to_freq() -> None:
    assert str_to_freq('148.5') == 148_500_000
    assert str_to_freq('148.5M') == 148_500_000
    assert str_to_freq('148.5mhz') == 148_500_000
    assert str_to_freq('40MHz') == 40_000_000
    assert str_to_freq('8k') == 8000
    assert str_to_freq('3.564GHz') == 3_564_000_000
    assert str_to_freq('27000000Hz') == 27_000_000
    assert str_to_freq('1485/10') == 148_500_000

def test_str_to_freq_fractional_hz() -> None:
    import pytest
    with pytest.raises(ValueError):
        str_to_freq('0.5Hz')

def test_freq_to_str() -> None:
    assert freq_to_str(148_500_000) == '148.5 MHz'
    assert freq_to_str(40_000_000) == '40 MHz'
    assert freq_to_str(3_564_000_000) == '3.564 GHz'
    assert freq_to_str(8000) == '8 kHz'
    assert freq_to_str(Fraction(1, 3)) == '0.333333333 Hz'
    assert freq_to_str(148_351_648, 4) == '148.4 MHz'

def test_fraction_to_str() -> None:
    assert fraction_to_str(Fraction(891, 20)) == '(44 + 11/20)'
    assert fraction_to_str(Fraction(891, 20), paren=False) == '44 + 11/20'
    assert fraction_to_str(Fraction(24)) == '24'
    assert fraction_to_str(Fraction(1, 3)) == '1/3'

def test_ceil_div() -> None:
    assert ceil_div(3_000_000_000, 148_500_000) == 21
    assert ceil_div(24, 12) == 2
    assert ceil_div(25, 12) == 3

def test_check_width() -> None:
    import pytest
    assert check_width('X', 511, 9) == 511
    with pytest.raises(FieldOverflow):
        check_width('X', 512, 9)
    with pytest.raises(FieldOverflow):
        check_width('X', -1, 9)
