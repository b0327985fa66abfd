'''Planning for the output side: which integer divide puts the VCO in band,
and how that divide is split over the NS1/NS2 stages and the fractional
N_Q/NFRAC_Q outputs.'''

from __future__ import annotations

from .plan_constants import NFRAC_HALF, NS1_RATIOS, NS2_BITS, ChipProfile
from .plan_tools import NoFeasibleDivider, ceil_div, check_width, fail, \
    freq_to_str

from dataclasses import dataclass
from enum import IntEnum

__all__ = ('CoarseSelect', 'OutputDividerFields', 'OutputFraction', 'VcoPlan',
           'decompose', 'output_divider_candidates', 'output_fraction')

class CoarseSelect(IntEnum):
    '''NS1 register codes.'''
    DIV5 = 0
    DIV6 = 1
    DIV4 = 2
    DIV1 = 3

    @property
    def ratio(self) -> int:
        return COARSE_RATIO[self]

COARSE_RATIO = {
    CoarseSelect.DIV1: 1,
    CoarseSelect.DIV4: 4,
    CoarseSelect.DIV5: 5,
    CoarseSelect.DIV6: 6,
}

@dataclass(frozen=True)
class VcoPlan:
    composite_divider: int
    vco_freq: int

@dataclass(frozen=True)
class OutputDividerFields:
    coarse_sel: CoarseSelect
    # Zero means NS2 is bypassed, otherwise NS2 divides by 2 * fine_div.
    fine_div: int

    def divider(self) -> int:
        fine = self.fine_div * 2 if self.fine_div else 1
        return self.coarse_sel.ratio * fine

@dataclass(frozen=True)
class OutputFraction:
    n_integer: int
    n_fraction: int

def output_divider_candidates(chip: ChipProfile, freq_out: int,
                              bypass: bool = False) -> list[int]:
    '''List every NS1 * NS2 divide that puts the VCO in range for freq_out.

    Different NS1/NS2 pairs can give the same total; the duplicates are kept.'''
    assert freq_out > 0
    outdiv_min = ceil_div(chip.fvco_min, freq_out)
    outdiv_max = chip.fvco_max // freq_out

    ratios = NS1_RATIOS if bypass else NS1_RATIOS[1:]

    if outdiv_min in ratios or outdiv_max in ratios:
        # NS1 alone hits a bound, NS2 is bypassed.
        ns2_min = ns2_max = 0
    else:
        ns2_min = ceil_div(outdiv_min, 2 * NS1_RATIOS[-1])
        # Rounding down may give zero.
        ns2_max = max(1, outdiv_max // (2 * ratios[0]))

    result: list[int] = []
    for ns2 in range(ns2_min, ns2_max + 1):
        for ns1 in ratios:
            outdiv = ns1 if ns2 == 0 else ns1 * ns2 * 2
            if chip.fvco_min <= freq_out * outdiv <= chip.fvco_max:
                result.append(outdiv)
    return result

def coarse_select(divider: int, bypass: bool = False) -> CoarseSelect:
    '''Pick NS1 for a total divide.  Later checks take priority, so /6 beats
    /5 beats /4.  Each check requires NS2 to be bypassed or even.'''
    select = None
    if divider == 4 or divider % 8 == 0:
        select = CoarseSelect.DIV4
    if divider == 5 or divider % 10 == 0:
        select = CoarseSelect.DIV5
    if divider == 6 or divider % 12 == 0:
        select = CoarseSelect.DIV6
    if select is None and bypass and (divider == 1 or divider % 2 == 0):
        select = CoarseSelect.DIV1
    if select is None:
        fail(f'Output divide {divider} cannot be split over NS1/NS2',
             NoFeasibleDivider)
    return select

def decompose(chip: ChipProfile, freq_out: int, candidates: list[int],
              bypass: bool = False) -> tuple[VcoPlan, OutputDividerFields]:
    '''Take the biggest candidate divide, giving the highest VCO frequency,
    and split it into the NS1/NS2 fields.'''
    if not candidates:
        fail(f'No output divider for {freq_to_str(freq_out)} keeps the VCO in '
             f'{freq_to_str(chip.fvco_min)} .. {freq_to_str(chip.fvco_max)}',
             NoFeasibleDivider)
    divider = max(candidates)
    vco = VcoPlan(divider, freq_out * divider)
    assert chip.fvco_min <= vco.vco_freq <= chip.fvco_max

    select = coarse_select(divider, bypass)
    fields = OutputDividerFields(select, divider // select.ratio // 2)
    assert fields.divider() == divider, f'{divider} {fields}'
    # NS1 /1 can leave more for NS2 than its register holds.
    check_width('NS2', fields.fine_div, NS2_BITS)
    return vco, fields

def output_fraction(divider: int) -> OutputFraction:
    '''N_Q / NFRAC_Q values for a total divide.  Odd divides use an exact half
    in the fraction.'''
    if divider & 1:
        return OutputFraction((divider + 1) >> 1, NFRAC_HALF)
    else:
        return OutputFraction(divider >> 1, 0)

def test_candidates_148M5() -> None:
    from .plan_constants import IDT_8T49N24X
    # outdiv 21 ..= 26.  6*2*2 and 4*3*2 both give 24.
    c = output_divider_candidates(IDT_8T49N24X, 148_500_000)
    assert c == [24, 24]
    assert 20 not in c and 30 not in c

def test_decompose_148M5() -> None:
    from .plan_constants import IDT_8T49N24X
    freq = 148_500_000
    vco, fields = decompose(
        IDT_8T49N24X, freq, output_divider_candidates(IDT_8T49N24X, freq))
    assert vco == VcoPlan(24, 3_564_000_000)
    assert fields == OutputDividerFields(CoarseSelect.DIV6, 2)

def test_ns2_bypass() -> None:
    from .plan_constants import IDT_8T49N24X
    # Just above 4GHz / 6, so outdiv_min == outdiv_max == 5 and NS1 alone
    # does the job.
    freq = 4_000_000_000 // 6 + 1
    assert output_divider_candidates(IDT_8T49N24X, freq, bypass=True) == [5]
    assert output_divider_candidates(IDT_8T49N24X, freq) == [5]
    vco, fields = decompose(IDT_8T49N24X, freq, [5])
    assert fields == OutputDividerFields(CoarseSelect.DIV5, 0)
    assert fields.divider() == 5

def test_coarse_priority() -> None:
    assert coarse_select(24) == CoarseSelect.DIV6
    assert coarse_select(40) == CoarseSelect.DIV5
    assert coarse_select(16) == CoarseSelect.DIV4
    assert coarse_select(120) == CoarseSelect.DIV6
    assert coarse_select(4) == CoarseSelect.DIV4
    assert coarse_select(6) == CoarseSelect.DIV6
    assert coarse_select(14, bypass=True) == CoarseSelect.DIV1
    assert coarse_select(1, bypass=True) == CoarseSelect.DIV1

def test_coarse_no_match() -> None:
    import pytest
    with pytest.raises(NoFeasibleDivider):
        coarse_select(14)
    with pytest.raises(NoFeasibleDivider):
        coarse_select(7, bypass=True)

def test_no_candidates() -> None:
    import pytest
    from .plan_constants import IDT_8T49N24X
    with pytest.raises(NoFeasibleDivider):
        decompose(IDT_8T49N24X, 148_500_000, [])

def test_divider_consistency() -> None:
    from .plan_constants import IDT_8T49N24X
    for freq in range(8000, 400_000_000, 997_153):
        for bypass in False, True:
            c = output_divider_candidates(IDT_8T49N24X, freq, bypass)
            for d in c:
                assert IDT_8T49N24X.fvco_min <= freq * d <= IDT_8T49N24X.fvco_max
            if not c:
                continue
            vco, fields = decompose(IDT_8T49N24X, freq, c, bypass)
            assert fields.divider() == vco.composite_divider
            assert vco.vco_freq == freq * vco.composite_divider

def test_fraction_law() -> None:
    assert output_fraction(24) == OutputFraction(12, 0)
    assert output_fraction(25) == OutputFraction(13, 1 << 27)
    assert output_fraction(5) == OutputFraction(3, 1 << 27)
    for d in range(1, 200):
        assert (output_fraction(d).n_fraction == 0) == (d % 2 == 0)

def test_bypass_ns2_overflow() -> None:
    import pytest
    from .plan_constants import IDT_8T49N24X
    from .plan_tools import FieldOverflow
    # 200002 only splits as NS1 /1, NS2 100001, which needs 17 bits.
    with pytest.raises(FieldOverflow, match='NS2'):
        decompose(IDT_8T49N24X, 19000, [200002], bypass=True)
    # Without bypass, NS1 /5 and NS2 20000.
    vco, fields = decompose(IDT_8T49N24X, 20000, [200000])
    assert fields == OutputDividerFields(CoarseSelect.DIV5, 20000)
