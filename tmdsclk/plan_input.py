'''Planning for the lower loop (DPLL) input path.

The reference input is divided by the pre-divider PRE to get the phase
detector frequency, and the VCO / M1 feedback is compared against that.  So we
want M1 / PRE to match vco / freq_in as closely as possible.'''

from .plan_constants import LOS_BITS, LOS_MIN, ChipProfile
from .plan_tools import PrescalerSearchExhausted, ceil_div, check_width, fail, \
    freq_to_str

from dataclasses import dataclass
import logging

log = logging.getLogger(__name__)

@dataclass(frozen=True)
class InputPathPlan:
    prescaler: int
    feedback_mult: int
    error_ppm: int

def ratio_error(vco_freq: int, freq_in: int, p: int, m: int) -> int:
    '''Error of m / p against vco_freq / freq_in, in the vendor's scaling:
    the difference over p * freq_in / 1000, times a million.  Truncates
    toward zero.'''
    num = (vco_freq * p - m * freq_in) * 1000000
    den = p * freq_in // 1000
    assert den > 0
    q = abs(num) // den
    return q if num >= 0 else -q

def input_path_search(chip: ChipProfile, freq_in: int, vco_freq: int,
                      tolerance_ppm: int|None = None) -> InputPathPlan:
    '''Scan PRE upwards from the smallest value that keeps the PFD in range,
    keeping the best (PRE, M1) pair.  An exact match ends the search, as does
    M1 running out of bits, because M1 only grows with PRE.

    With tolerance_ppm, a best pair worse than that is a failure.'''
    p_min = max(1, ceil_div(freq_in, chip.fpd_max))
    best: InputPathPlan|None = None
    for p in range(p_min, chip.p_max + 1):
        # Round half up.
        m = (vco_freq * p + (freq_in >> 1)) // freq_in
        if m >= chip.m_max:
            break
        error = ratio_error(vco_freq, freq_in, p, m)
        if best is None or abs(error) < abs(best.error_ppm):
            best = InputPathPlan(p, m, error)
            if error == 0:
                break

    if best is None:
        fail(f'No input divider for {freq_to_str(freq_in)} gives M1 below '
             f'{chip.m_max}', PrescalerSearchExhausted)
    if tolerance_ppm is not None and abs(best.error_ppm) > tolerance_ppm:
        fail(f'Best input divider PRE={best.prescaler} M1={best.feedback_mult} '
             f'has error {best.error_ppm}, limit {tolerance_ppm}',
             PrescalerSearchExhausted)

    log.debug('input path %s: PRE=%d M1=%d error=%d', freq_to_str(freq_in),
              best.prescaler, best.feedback_mult, best.error_ppm)
    return best

def los_threshold(vco_freq: int, freq_in: int) -> int:
    '''Loss-of-signal monitor count.'''
    los = max(vco_freq // 8 // freq_in + 3, LOS_MIN)
    return check_width('LOS', los, LOS_BITS)

def test_input_path_148M5() -> None:
    from .plan_constants import IDT_8T49N24X
    # 3564 / 40 = 891 / 10, so the first exact PRE is the first multiple of
    # 10 at or above ceil(40MHz / 128kHz) = 313.
    ip = input_path_search(IDT_8T49N24X, 40_000_000, 3_564_000_000)
    assert ip == InputPathPlan(320, 28512, 0)

def test_input_path_minimal() -> None:
    '''Brute force over the searched range must not find anything better.'''
    from .plan_constants import IDT_8T49N24X
    chip = IDT_8T49N24X
    freq_in = 27_000_000
    vco = 3_000_000_000 + 7
    ip = input_path_search(chip, freq_in, vco)
    p_min = ceil_div(freq_in, chip.fpd_max)
    for p in range(p_min, ip.prescaler + 1):
        m = (vco * p + freq_in // 2) // freq_in
        assert abs(ip.error_ppm) <= abs(ratio_error(vco, freq_in, p, m))
    assert ip.feedback_mult == (vco * ip.prescaler + freq_in // 2) // freq_in

def test_input_path_first_exact() -> None:
    from .plan_constants import IDT_8T49N24X
    ip = input_path_search(IDT_8T49N24X, 128_000, 3_200_000_000)
    assert ip == InputPathPlan(1, 25000, 0)

def test_input_path_exhausted() -> None:
    import dataclasses
    import pytest
    from .plan_constants import IDT_8T49N24X
    # With a 14 bit M1, nothing fits at all.
    chip = dataclasses.replace(IDT_8T49N24X, m_max = 1 << 14)
    with pytest.raises(PrescalerSearchExhausted):
        input_path_search(chip, 40_000_000, 3_564_000_000)

def test_input_path_tolerance() -> None:
    import dataclasses
    import pytest
    from .plan_constants import IDT_8T49N24X
    # Stop the search before the exact match at PRE=320.
    chip = dataclasses.replace(IDT_8T49N24X, p_max = 319)
    ip = input_path_search(chip, 40_000_000, 3_564_000_000)
    assert ip.error_ppm != 0
    assert input_path_search(chip, 40_000_000, 3_564_000_000,
                             tolerance_ppm = abs(ip.error_ppm)) == ip
    with pytest.raises(PrescalerSearchExhausted):
        input_path_search(chip, 40_000_000, 3_564_000_000, tolerance_ppm=0)

def test_ratio_error_sign() -> None:
    assert ratio_error(3_564_000_000, 40_000_000, 313, 27888) > 0
    assert ratio_error(3_564_000_000, 40_000_000, 313, 27889) < 0
    assert ratio_error(3_564_000_000, 40_000_000, 320, 28512) == 0

def test_los() -> None:
    assert los_threshold(3_564_000_000, 40_000_000) == 14
    assert los_threshold(3_000_000_000, 875_000_000) == 6
    assert los_threshold(4_000_000_000, 8000) == 62503
