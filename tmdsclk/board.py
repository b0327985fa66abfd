'''Board configuration: how the clock chip is wired up, and what it should
produce at bring-up.

    [clock]
    reference = 40MHz
    frequency = 148.5MHz
    mode = synthesizer
    bypass = no
    i2c-address = 0x7c
'''

from __future__ import annotations

from .device import DEFAULT_I2C_ADDRESS
from .idt8t49n24x_plan import FrequencyRequest, Mode
from .plan_constants import IDT_8T49N24X
from .plan_tools import str_to_freq

import configparser

from dataclasses import dataclass

@dataclass
class BoardConfig:
    reference: int = IDT_8T49N24X.xtal_freq
    # Initial output frequency, if any.
    frequency: int|None = None
    mode: Mode = Mode.FREE_RUN_SYNTHESIZER
    bypass: bool = False
    i2c_address: int = DEFAULT_I2C_ADDRESS

    def request(self, freq_out: int|None = None) -> FrequencyRequest:
        if freq_out is None:
            freq_out = self.frequency
        if freq_out is None:
            raise ValueError('No output frequency configured')
        return FrequencyRequest(
            self.reference, freq_out, self.bypass,
            self.mode == Mode.FREE_RUN_SYNTHESIZER)

def parse_board(config: configparser.ConfigParser) -> BoardConfig:
    result = BoardConfig()
    if not config.has_section('clock'):
        return result
    clock = config['clock']
    if 'reference' in clock:
        result.reference = str_to_freq(clock['reference'])
    if 'frequency' in clock:
        result.frequency = str_to_freq(clock['frequency'])
    if 'mode' in clock:
        result.mode = Mode(clock['mode'].strip().lower())
    result.bypass = clock.getboolean('bypass', fallback=False)
    if 'i2c-address' in clock:
        result.i2c_address = int(clock['i2c-address'], 0)
        if not 0 < result.i2c_address < 0x80:
            raise ValueError(
                f'I2C address {result.i2c_address:#x} is not 7 bit')
    return result

def read_board_file(path: str) -> BoardConfig:
    config = configparser.ConfigParser()
    fs = config.read((path,))
    if len(fs) == 0:
        raise FileNotFoundError(path)
    return parse_board(config)

def test_parse() -> None:
    import textwrap
    config = configparser.ConfigParser()
    config.read_string(textwrap.dedent(__doc__.split('\n\n', 1)[1])) # type: ignore
    board = parse_board(config)
    assert board == BoardConfig(40_000_000, 148_500_000,
                                Mode.FREE_RUN_SYNTHESIZER, False, 0x7c)
    assert board.request() == FrequencyRequest(40_000_000, 148_500_000)

def test_parse_ja() -> None:
    config = configparser.ConfigParser()
    config.read_string('[clock]\nmode = jitter-attenuator\nbypass = yes\n'
                       'reference = 148.5\n')
    board = parse_board(config)
    assert board.mode == Mode.JITTER_ATTENUATOR and board.bypass
    assert board.request(74_250_000) == FrequencyRequest(
        148_500_000, 74_250_000, True, False)

def test_parse_errors() -> None:
    import pytest
    config = configparser.ConfigParser()
    config.read_string('[clock]\nmode = bogus\n')
    with pytest.raises(ValueError):
        parse_board(config)
    config = configparser.ConfigParser()
    config.read_string('[clock]\ni2c-address = 0xf8\n')
    with pytest.raises(ValueError):
        parse_board(config)
    with pytest.raises(ValueError):
        BoardConfig().request()
