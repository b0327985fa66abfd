from dataclasses import dataclass

# All the frequencies are integer Hz.
Hz = 1
kHz = 1000 * Hz
MHz = 1000 * kHz
GHz = 1000 * MHz

@dataclass(frozen=True)
class ChipProfile:
    '''Absolute limits of a synthesizer part.  The planner takes one of these
    rather than hard-coding the numbers.'''
    name: str
    # The crystal feeding the upper (fractional) loop.  This gets doubled at
    # the APLL PFD.
    xtal_freq: int
    fvco_min: int
    fvco_max: int
    fout_min: int
    fout_max: int
    fin_min: int
    fin_max: int
    fpd_min: int
    fpd_max: int
    # PRE goes up to p_max inclusive, M1 must stay below m_max.
    p_max: int
    m_max: int

IDT_8T49N24X = ChipProfile(
    name     = '8T49N24x',
    xtal_freq = 40 * MHz,
    fvco_min = 3 * GHz,
    fvco_max = 4 * GHz,
    fout_min = 8 * kHz,
    fout_max = 400 * MHz,
    fin_min  = 8 * kHz,
    fin_max  = 875 * MHz,
    fpd_min  = 8 * kHz,
    fpd_max  = 128 * kHz,
    p_max    = 1 << 22,
    m_max    = 1 << 24)

# Register field widths.
DSM_INT_BITS = 9
DSM_FRAC_BITS = 21
N_Q_BITS = 18
NFRAC_BITS = 28
PRE_BITS = 21
M1_BITS = 24
LOS_BITS = 17
NS2_BITS = 16

# An odd output divide is realised as an exact half in NFRAC.
NFRAC_HALF = 1 << NFRAC_BITS - 1

# The LOS monitor threshold never goes below this.
LOS_MIN = 6

# Coarse (NS1) output divider ratios.  Index 0 is only available when the
# output stage is bypassed.
NS1_RATIOS = 1, 4, 5, 6
