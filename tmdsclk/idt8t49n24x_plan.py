'''Frequency planning for the 8T49N24x, and translation of a plan into the
register writes that program it.'''

from __future__ import annotations

from .idt8t49n24x import CAL_HOLD, CAL_RUN, CONFIG_BASE, CONFIG_JA, LOL_GPIO, \
    STATE_AUTO, STATE_FREERUN, MaskedBytes, RegisterWrite, encode
from .plan_constants import DSM_FRAC_BITS, IDT_8T49N24X, NFRAC_HALF, \
    ChipProfile
from .plan_feedback import FeedbackSettings, feedback_plan
from .plan_input import InputPathPlan, input_path_search, los_threshold
from .plan_output import OutputDividerFields, OutputFraction, VcoPlan, \
    decompose, output_divider_candidates, output_fraction
from .plan_tools import OutOfRange, fail, fraction_to_str, freq_to_str

import logging

from dataclasses import dataclass
from enum import Enum
from fractions import Fraction

__all__ = ('FrequencyRequest', 'Mode', 'ReadBack', 'SynthesizerSettings',
           'achieved_freq', 'init_writes', 'make_register_writes',
           'mode_writes', 'plan', 'plan_request', 'ref_input_writes',
           'report_plan', 'reverse_plan', 'validate_request')

log = logging.getLogger(__name__)

class Mode(Enum):
    FREE_RUN_SYNTHESIZER = 'synthesizer'
    JITTER_ATTENUATOR = 'jitter-attenuator'

@dataclass(frozen=True)
class FrequencyRequest:
    freq_in: int
    freq_out: int
    bypass_output_stage: bool = False
    synthesizer_mode: bool = True

    @property
    def mode(self) -> Mode:
        if self.synthesizer_mode:
            return Mode.FREE_RUN_SYNTHESIZER
        return Mode.JITTER_ATTENUATOR

@dataclass(frozen=True)
class SynthesizerSettings:
    request: FrequencyRequest
    vco: VcoPlan
    output_dividers: OutputDividerFields
    feedback: FeedbackSettings
    # Q2 and Q3.
    output_fractions: tuple[OutputFraction, OutputFraction]
    # Reference inputs 0 and 1.
    input_paths: tuple[InputPathPlan, InputPathPlan]
    los_threshold: int

def validate_request(chip: ChipProfile, request: FrequencyRequest) -> None:
    '''Check each bound on its own; any one failing rejects the request.'''
    if request.freq_in < chip.fin_min or request.freq_in > chip.fin_max:
        fail(f'Input frequency {freq_to_str(request.freq_in)} is not in range '
             f'{freq_to_str(chip.fin_min)} .. {freq_to_str(chip.fin_max)}',
             OutOfRange)
    if request.freq_out < chip.fout_min or request.freq_out > chip.fout_max:
        fail(f'Output frequency {freq_to_str(request.freq_out)} is not in '
             f'range {freq_to_str(chip.fout_min)} .. '
             f'{freq_to_str(chip.fout_max)}', OutOfRange)

def plan_request(request: FrequencyRequest,
                 chip: ChipProfile = IDT_8T49N24X,
                 tolerance_ppm: int|None = None) -> SynthesizerSettings:
    '''Compute all the divider settings for a request.  Pure computation, no
    device access.'''
    validate_request(chip, request)

    bypass = request.bypass_output_stage
    candidates = output_divider_candidates(chip, request.freq_out, bypass)
    vco, dividers = decompose(chip, request.freq_out, candidates, bypass)

    feedback = feedback_plan(chip, vco.vco_freq)
    fraction = output_fraction(vco.composite_divider)
    input_path = input_path_search(
        chip, request.freq_in, vco.vco_freq, tolerance_ppm)
    los = los_threshold(vco.vco_freq, request.freq_in)

    log.debug('%s: VCO %s = %d * %s', chip.name, freq_to_str(vco.vco_freq),
              vco.composite_divider, freq_to_str(request.freq_out))

    return SynthesizerSettings(
        request = request,
        vco = vco,
        output_dividers = dividers,
        feedback = feedback,
        output_fractions = (fraction, fraction),
        input_paths = (input_path, input_path),
        los_threshold = los)

def plan(freq_in: int, freq_out: int, bypass: bool = False,
         synthesizer: bool = True,
         chip: ChipProfile = IDT_8T49N24X) -> SynthesizerSettings:
    return plan_request(
        FrequencyRequest(freq_in, freq_out, bypass, synthesizer), chip)

def achieved_freq(settings: SynthesizerSettings,
                  chip: ChipProfile = IDT_8T49N24X) -> Fraction:
    '''The output frequency the settings actually produce, given the finite
    resolution of the APLL feedback divider.'''
    vco = 2 * chip.xtal_freq * settings.feedback.divider()
    return vco / settings.vco.composite_divider

def ref_input_writes(input: int, enable: bool) -> list[RegisterWrite]:
    assert input in (0, 1)
    return encode((f'REF{input}_DIS', 0 if enable else 1))

def mode_writes(mode: Mode) -> list[RegisterWrite]:
    '''DPLL state and APLL SYN_MODE for a mode.  Reference input 1 is always
    disabled, input 0 is only used as a jitter attenuator.'''
    if mode == Mode.FREE_RUN_SYNTHESIZER:
        state = encode(('DPLL_STATE', STATE_FREERUN), ('REF0_DIS', 1),
                       ('REF1_DIS', 1))
        return state + encode(('SYN_MODE', 1))
    else:
        state = encode(('DPLL_STATE', STATE_AUTO), ('REF0_DIS', 0),
                       ('REF1_DIS', 1))
        return state + encode(('SYN_MODE', 0))

def make_register_writes(settings: SynthesizerSettings,
                         program_q0: bool = False) -> list[RegisterWrite]:
    '''The ordered write sequence for a plan.  Calibration is held off for
    the whole sequence, and released by the final write.

    program_q0 also sets up the integer-only Q0 divider.'''
    q2, q3 = settings.output_fractions
    in0, in1 = settings.input_paths
    fields: list[tuple[str, int]] = [
        ('PRE0', in0.prescaler),
        ('PRE1', in1.prescaler),
        ('M1_0', in0.feedback_mult),
        ('M1_1', in1.feedback_mult),
        ('DSM_INT', settings.feedback.integer_part),
        ('DSM_FRAC', settings.feedback.fractional_part),
        ('N_Q2', q2.n_integer),
        ('N_Q3', q3.n_integer),
        ('NFRAC_Q2', q2.n_fraction),
        ('NFRAC_Q3', q3.n_fraction),
    ]
    if program_q0:
        fields.append(('NS1_Q0', settings.output_dividers.coarse_sel))
        fields.append(('NS2_Q0', settings.output_dividers.fine_div))
    fields.append(('LOS0', settings.los_threshold))
    fields.append(('LOS1', settings.los_threshold))

    writes = encode(('CAL_CTRL', CAL_HOLD))
    writes += ref_input_writes(0, False)
    writes += ref_input_writes(1, False)
    writes += mode_writes(settings.request.mode)
    for name, value in fields:
        writes += encode((name, value))
    writes += encode(('CAL_CTRL', CAL_RUN))
    return writes

def init_writes() -> list[RegisterWrite]:
    '''Load the default jitter attenuator configuration and route loss of lock
    to the GPIOs.  CAL_CTRL is skipped in the image, and released last.'''
    writes = encode(('CAL_CTRL', CAL_HOLD))
    cal = encode(('CAL_CTRL', CAL_RUN))[0].address
    for address in range(CONFIG_BASE, len(CONFIG_JA)):
        if address != cal:
            writes.append(RegisterWrite(address, CONFIG_JA[address]))
    writes += encode(('CAL_CTRL', CAL_RUN))
    writes += [RegisterWrite(a, v) for a, v in LOL_GPIO]
    return writes

@dataclass
class ReadBack:
    '''What a register read-back says the device is doing.'''
    vco: Fraction
    divider: int
    freq_out: Fraction
    prescaler: int
    feedback_mult: int
    # The input frequency that the DPLL dividers suit.
    freq_in: Fraction
    los_threshold: int
    mode: Mode

def reverse_plan(d: MaskedBytes,
                 chip: ChipProfile = IDT_8T49N24X) -> ReadBack:
    '''Scrape the Q2 frequency plan out of a configuration read-back.'''
    feedback = FeedbackSettings(d.DSM_INT, d.DSM_FRAC)
    vco = 2 * chip.xtal_freq * feedback.divider()
    # Inverse of output_fraction().
    divider = 2 * d.N_Q2
    if d.NFRAC_Q2:
        if d.NFRAC_Q2 != NFRAC_HALF:
            raise ValueError(f'NFRAC_Q2 = {d.NFRAC_Q2:#x} is not an integer '
                             f'or half-integer output divide')
        divider -= 1
    freq_out = vco / divider if divider else Fraction(0)
    prescaler = d.PRE0
    feedback_mult = d.M1_0
    freq_in = vco * prescaler / feedback_mult if feedback_mult else Fraction(0)
    mode = Mode.FREE_RUN_SYNTHESIZER if d.SYN_MODE \
        else Mode.JITTER_ATTENUATOR
    return ReadBack(vco = vco, divider = divider, freq_out = freq_out,
                    prescaler = prescaler, feedback_mult = feedback_mult,
                    freq_in = freq_in, los_threshold = d.LOS0, mode = mode)

def report_plan(settings: SynthesizerSettings, verbose: bool = False,
                program_q0: bool = False,
                chip: ChipProfile = IDT_8T49N24X) -> None:
    request = settings.request
    vco = settings.vco
    dividers = settings.output_dividers
    feedback = settings.feedback
    actual = achieved_freq(settings, chip)

    print(f'Output Q2/Q3: {freq_to_str(actual)}', end='')
    if actual != request.freq_out:
        print(f' error {freq_to_str(actual - request.freq_out, 4)}', end='')
    print()
    fine = f', NS2 {dividers.fine_div} (/{2 * dividers.fine_div})' \
        if dividers.fine_div else ''
    print(f'VCO: {freq_to_str(vco.vco_freq)} = '
          f'{freq_to_str(request.freq_out)} * {vco.composite_divider} '
          f'[NS1 /{dividers.coarse_sel.ratio}{fine}]')
    divider = fraction_to_str(feedback.divider())
    print(f'APLL: 2 * {freq_to_str(chip.xtal_freq)} * {divider} '
          f'[{feedback.integer_part} + {feedback.fractional_part}'
          f'/2^{DSM_FRAC_BITS}]')
    for i, ip in enumerate(settings.input_paths):
        print(f'DPLL input {i}: {freq_to_str(request.freq_in)} '
              f'/ {ip.prescaler} * {ip.feedback_mult}, error {ip.error_ppm}')
    print(f'LOS threshold: {settings.los_threshold}')
    print(f'Mode: {request.mode.value}')

    if verbose:
        print()
        for w in make_register_writes(settings, program_q0):
            print(w)

def test_scenario_148M5() -> None:
    s = plan(40_000_000, 148_500_000)
    assert s.vco == VcoPlan(24, 3_564_000_000)
    assert IDT_8T49N24X.fvco_min <= s.vco.vco_freq <= IDT_8T49N24X.fvco_max
    assert s.output_dividers.divider() == 24
    assert s.feedback == FeedbackSettings(44, 1153434)
    assert s.output_fractions == (OutputFraction(12, 0),) * 2
    assert s.input_paths == (InputPathPlan(320, 28512, 0),) * 2
    assert s.los_threshold == 14
    assert abs(achieved_freq(s) - 148_500_000) < 1

def test_rejection_boundaries() -> None:
    import pytest
    chip = IDT_8T49N24X
    with pytest.raises(OutOfRange):
        plan(chip.fin_min - 1, 148_500_000)
    with pytest.raises(OutOfRange):
        plan(chip.fin_max + 1, 148_500_000)
    with pytest.raises(OutOfRange):
        plan(40_000_000, chip.fout_max + 1)
    with pytest.raises(OutOfRange):
        plan(40_000_000, chip.fout_min - 1)
    # The bounds themselves are fine.
    plan(40_000_000, chip.fout_max)
    plan(40_000_000, chip.fout_min)

def test_idempotent() -> None:
    a = plan(40_000_000, 297_000_000)
    b = plan(40_000_000, 297_000_000)
    assert a == b
    assert make_register_writes(a) == make_register_writes(b)

def test_vco_containment() -> None:
    for freq in (8000, 25_175_000, 27_000_000, 74_250_000, 148_500_000,
                 297_000_000, 340_000_000, 400_000_000):
        s = plan(40_000_000, freq)
        assert IDT_8T49N24X.fvco_min <= s.vco.vco_freq <= IDT_8T49N24X.fvco_max
        assert s.vco.vco_freq == freq * s.vco.composite_divider
        assert s.output_dividers.divider() == s.vco.composite_divider
        lsb = Fraction(1, 1 << DSM_FRAC_BITS)
        assert abs(s.feedback.divider()
                   - Fraction(s.vco.vco_freq, 2 * IDT_8T49N24X.xtal_freq)) <= lsb

def test_register_sequence() -> None:
    s = plan(40_000_000, 148_500_000)
    writes = make_register_writes(s)
    assert writes[0] == RegisterWrite(0x70, 0x05)
    assert writes[-1] == RegisterWrite(0x70, 0x00)
    assert writes[1:5] == [
        RegisterWrite(0x0a, 0x10, 0x10), RegisterWrite(0x0a, 0x20, 0x20),
        RegisterWrite(0x0a, 0x31, 0x33), RegisterWrite(0x69, 0x08, 0x08)]
    # Calibration is only touched at the ends.
    assert [w for w in writes if w.address == 0x70] == [writes[0], writes[-1]]
    image = MaskedBytes()
    for w in writes:
        image.apply(w)
    assert image.PRE0 == image.PRE1 == 320
    assert image.M1_0 == image.M1_1 == 28512
    assert image.DSM_INT == 44 and image.DSM_FRAC == 1153434
    assert image.N_Q2 == image.N_Q3 == 12
    assert image.NFRAC_Q2 == image.NFRAC_Q3 == 0
    assert image.LOS0 == image.LOS1 == 14
    assert image.CAL_CTRL == CAL_RUN
    assert not image.known(0x3f)
    # All values are bytes.
    assert all(0 <= w.value <= 255 and 0 <= w.address < 1 << 16
               for w in writes)

def test_register_sequence_q0() -> None:
    s = plan(40_000_000, 148_500_000)
    image = MaskedBytes()
    for w in make_register_writes(s, program_q0=True):
        image.apply(w)
    assert image.NS1_Q0 == 1            # Divide by 6.
    assert image.NS2_Q0 == 2

def test_bypass_overflow_at_planning() -> None:
    '''An NS2 too big for its register is caught by plan(), not left for
    the register encoding.'''
    import pytest
    from .plan_tools import FieldOverflow
    # 4GHz / 19kHz gives a divide of 210526, only possible as /1 * 2*105263.
    with pytest.raises(FieldOverflow):
        plan(40_000_000, 19000, bypass=True)
    # The same output without bypass is fine.
    s = plan(40_000_000, 19000)
    assert s.output_dividers.fine_div < 1 << 16

def test_jitter_attenuator_mode() -> None:
    s = plan(40_000_000, 148_500_000, synthesizer=False)
    assert s.request.mode == Mode.JITTER_ATTENUATOR
    writes = make_register_writes(s)
    assert RegisterWrite(0x0a, 0x20, 0x33) in writes
    assert RegisterWrite(0x69, 0x00, 0x08) in writes

def test_reverse_plan() -> None:
    s = plan(40_000_000, 148_500_000)
    image = MaskedBytes()
    for w in make_register_writes(s):
        image.apply(w)
    rb = reverse_plan(image)
    assert rb.divider == 24
    assert rb.freq_out == achieved_freq(s)
    assert rb.prescaler == 320 and rb.feedback_mult == 28512
    assert rb.los_threshold == 14
    assert rb.mode == Mode.FREE_RUN_SYNTHESIZER
    assert abs(rb.freq_in - 40_000_000) < 1

def test_reverse_plan_odd() -> None:
    image = MaskedBytes()
    image.N_Q2, image.NFRAC_Q2 = output_fraction(25).n_integer, 1 << 27
    image.DSM_INT = 40
    assert reverse_plan(image).divider == 25

def test_reverse_plan_general_fraction() -> None:
    import pytest
    image = MaskedBytes()
    image.N_Q2, image.NFRAC_Q2 = 12, 12345
    image.DSM_INT = 40
    with pytest.raises(ValueError, match='NFRAC_Q2'):
        reverse_plan(image)

def test_init_writes() -> None:
    writes = init_writes()
    assert writes[0] == RegisterWrite(0x70, 0x05)
    assert RegisterWrite(0x70, 0x00) == writes[-5]
    assert writes[-4:] == [RegisterWrite(a, v) for a, v in LOL_GPIO]
    addresses = [w.address for w in writes[1:-5]]
    assert addresses == [a for a in range(8, 132) if a != 0x70]

def test_report(capsys) -> None:
    report_plan(plan(40_000_000, 148_500_000), verbose=True)
    out = capsys.readouterr().out
    assert 'VCO: 3.564 GHz = 148.5 MHz * 24 [NS1 /6, NS2 2 (/4)]' in out
    assert 'DPLL input 0: 40 MHz / 320 * 28512, error 0' in out
    assert '0x0070 = 0x05' in out
