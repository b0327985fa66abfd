'''Upper loop (APLL) feedback divider planning.

The APLL compares the VCO, divided by the ΣΔ feedback divider, against twice
the crystal frequency.  The divider is DSM_INT + DSM_FRAC / 2^21.'''

from .fixed_point import FixedPoint
from .plan_constants import DSM_FRAC_BITS, DSM_INT_BITS, ChipProfile
from .plan_tools import check_width

from dataclasses import dataclass
from fractions import Fraction

@dataclass(frozen=True)
class FeedbackSettings:
    integer_part: int
    fractional_part: int

    def divider(self) -> Fraction:
        return FixedPoint.from_parts(
            self.integer_part, self.fractional_part, DSM_FRAC_BITS).value()

def feedback_plan(chip: ChipProfile, vco_freq: int) -> FeedbackSettings:
    fp = FixedPoint.from_ratio(vco_freq, 2 * chip.xtal_freq, DSM_FRAC_BITS)
    check_width('DSM_INT', fp.integer, DSM_INT_BITS)
    return FeedbackSettings(fp.integer, fp.fraction)

def test_feedback_148M5() -> None:
    from .plan_constants import IDT_8T49N24X
    fb = feedback_plan(IDT_8T49N24X, 3_564_000_000)
    assert fb == FeedbackSettings(44, 1153434)

def test_feedback_matches_vendor_scaling() -> None:
    '''The vendor code computes the fraction as (rem * 2048 + 39062) // 78125,
    which only works for a 40MHz crystal.  Check we agree over the band.'''
    from .plan_constants import IDT_8T49N24X
    for vco in range(3_000_000_000, 4_000_000_001, 7_777_777):
        fb = feedback_plan(IDT_8T49N24X, vco)
        rem = vco % 80_000_000
        frac = (rem * 2048 + (78125 >> 1)) // 78125
        if frac == 1 << 21:
            assert fb.fractional_part == 0
            assert fb.integer_part == vco // 80_000_000 + 1
        else:
            assert fb.fractional_part == frac
            assert fb.integer_part == vco // 80_000_000

def test_feedback_round_trip() -> None:
    from .plan_constants import IDT_8T49N24X
    lsb = Fraction(1, 1 << 21)
    for vco in range(3_000_000_000, 4_000_000_001, 3_333_333):
        fb = feedback_plan(IDT_8T49N24X, vco)
        assert abs(fb.divider() - Fraction(vco, 80_000_000)) <= lsb

def test_feedback_overflow() -> None:
    import dataclasses
    import pytest
    from .plan_constants import IDT_8T49N24X
    from .plan_tools import FieldOverflow
    # A 3MHz crystal would need a feedback divide of 666.
    chip = dataclasses.replace(IDT_8T49N24X, xtal_freq=3_000_000)
    with pytest.raises(FieldOverflow):
        feedback_plan(chip, 4_000_000_000)
