'''Register map for the 8T49N24x.

Addresses are 16 bit, data is 8 bit.  Multi-byte fields are big endian, with
any partial byte at the lowest address.  Fields that share a byte with other
fields are written masked, everything else is written as whole bytes.'''

from __future__ import annotations

from .plan_tools import check_width

import difflib
import struct

from collections.abc import ByteString
from dataclasses import dataclass
from typing import NamedTuple

DATA_SIZE = 256

class RegisterWrite(NamedTuple):
    address: int
    value: int
    # Bits of value that are to be written.  Others are left untouched.
    mask: int = 0xff

    def __str__(self) -> str:
        if self.mask == 0xff:
            return f'{self.address:#06x} = {self.value:#04x}'
        return f'{self.address:#06x} = {self.value:#04x} & {self.mask:#04x}'

@dataclass(frozen=True)
class Register:
    name: str
    # Address of the most significant byte.
    address: int
    width: int
    shift: int = 0
    shared: bool = False

    def __str__(self) -> str:
        return self.name

    @property
    def byte_span(self) -> int:
        return (self.shift + self.width + 7) // 8

    def mask(self) -> int:
        return (1 << self.width) - 1 << self.shift

    def extract(self, bb: ByteString) -> int:
        b = bytes(bb[self.address : self.address + self.byte_span])
        value = struct.unpack('>Q', (b'\0' * 8 + b)[-8:])[0]
        return value >> self.shift & (1 << self.width) - 1

    def encode(self, value: int) -> list[RegisterWrite]:
        '''Bytes to write for value.  Raises FieldOverflow rather than
        truncating.'''
        check_width(self.name, value, self.width)
        data = struct.pack('>Q', value << self.shift)[-self.byte_span:]
        mask = struct.pack('>Q', self.mask())[-self.byte_span:]
        return [RegisterWrite(self.address + i, data[i],
                              mask[i] if self.shared else 0xff)
                for i in range(self.byte_span)]

    @staticmethod
    def get(key: str) -> Register:
        key = key.upper().replace('-', '_')
        try:
            return REGISTERS[key]
        except KeyError:
            prompt = ' '.join(difflib.get_close_matches(key, REGISTERS))
            if prompt:
                raise KeyError(f'{key}: did you mean {prompt}?') from None
            raise

REGISTERS: dict[str, Register] = {r.name: r for r in (
    Register('DPLL_STATE', 0x0a, 2, shared=True),
    Register('REF0_DIS',   0x0a, 1, 4, shared=True),
    Register('REF1_DIS',   0x0a, 1, 5, shared=True),
    Register('PRE0',       0x0b, 21),
    Register('PRE1',       0x0e, 21),
    Register('M1_0',       0x11, 24),
    Register('M1_1',       0x14, 24),
    Register('DSM_INT',    0x25, 9),
    Register('DSM_FRAC',   0x28, 21),
    Register('NS1_Q0',     0x3f, 2),
    Register('NS2_Q0',     0x40, 16),
    Register('N_Q1',       0x42, 18),
    Register('N_Q2',       0x45, 18),
    Register('N_Q3',       0x48, 18),
    Register('NFRAC_Q1',   0x57, 28),
    Register('NFRAC_Q2',   0x5b, 28),
    Register('NFRAC_Q3',   0x5f, 28),
    Register('SYN_MODE',   0x69, 1, 3, shared=True),
    Register('CAL_CTRL',   0x70, 8),
    Register('LOS0',       0x71, 17),
    Register('LOS1',       0x74, 17),
)}

# DPLL_STATE values.
STATE_AUTO = 0
STATE_FREERUN = 1

# CAL_CTRL values.  Hold off both the DPLL and APLL calibration while the
# dividers are changing.
CAL_HOLD = 0x05
CAL_RUN = 0x00

def encode(*items: tuple[Register|str, int]) -> list[RegisterWrite]:
    '''Encode several fields, merging those that share a byte into a single
    write.  Order is by first appearance.'''
    merged: dict[int, RegisterWrite] = {}
    for r, value in items:
        if isinstance(r, str):
            r = Register.get(r)
        for w in r.encode(value):
            old = merged.get(w.address)
            if old is not None:
                w = RegisterWrite(w.address,
                                  old.value & ~w.mask | w.value & w.mask,
                                  old.mask | w.mask)
            merged[w.address] = w
    return list(merged.values())

class MaskedBytes:
    '''A register image, with a mask of which bits are known.'''
    data: bytearray
    mask: bytearray
    def __init__(self, data: ByteString|None = None):
        self.data = bytearray(DATA_SIZE)
        self.mask = bytearray(DATA_SIZE)
        if data is not None:
            self.data[:len(data)] = data
            self.mask[:len(data)] = b'\xff' * len(data)

    def apply(self, w: RegisterWrite) -> None:
        self.data[w.address] = self.data[w.address] & ~w.mask \
            | w.value & w.mask
        self.mask[w.address] |= w.mask

    def known(self, address: int, mask: int = 0xff) -> bool:
        return self.mask[address] & mask == mask

    def ranges(self, max_block: int = 1000) -> list[tuple[int, int]]:
        '''Return a list of (start, count) of indexes with non-zero mask.'''
        result: list[tuple[int, int]] = []
        addr = None
        span = 0
        for i, m in enumerate(self.mask):
            if not m:
                continue
            if addr is not None and addr + span == i and span < max_block:
                span += 1
                continue
            if addr is not None:
                result.append((addr, span))
            addr = i
            span = 1
        if addr is not None:
            result.append((addr, span))
        return result

    def extract(self, r: Register|str) -> int:
        if isinstance(r, str):
            r = Register.get(r)
        return r.extract(self.data)

    def insert(self, r: Register|str, value: int) -> None:
        for w in encode((r, value)):
            self.apply(w)

    def __getattr__(self, key: str) -> int:
        try:
            reg = REGISTERS[key]
        except KeyError:
            raise AttributeError(key)
        return self.extract(reg)

    def __setattr__(self, key: str, value: int) -> None:
        if key in ('data', 'mask'):
            super().__setattr__(key, value)
            return
        try:
            reg = REGISTERS[key]
        except KeyError:
            raise AttributeError(key)
        self.insert(reg, int(value))

# Timing Commander configuration.  Jitter attenuator mode, producing 148.5MHz
# on Q2 and Q3 from a 148.5MHz input.  Indexed by address, only CONFIG_BASE
# upwards gets written.
CONFIG_JA = bytes((
    0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0xFE, 0xEF, 0x00, 0x03, 0x00, 0x20, 0x00,
    0x04, 0x89, 0x00, 0x00, 0x01, 0x00, 0x63, 0xC6, 0x07, 0x00, 0x00, 0x77,
    0x6D, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0xFF, 0xFF, 0xFF, 0xFF, 0x01,
    0x3F, 0x00, 0x28, 0x00, 0x1A, 0xCC, 0xCD, 0x00, 0x01, 0x00, 0x00, 0xD0,
    0x08, 0x00, 0x00, 0x00, 0x00, 0x00, 0x08, 0x00, 0x00, 0x0C, 0x00, 0x00,
    0x00, 0x44, 0x44, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x0B,
    0x00, 0x00, 0x0B, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00,
    0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00,
    0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x89, 0x02, 0x2B, 0x20,
    0x00, 0x00, 0x00, 0x03, 0x00, 0x00, 0x00, 0x06, 0x00, 0x00, 0x00, 0x00,
    0x00, 0x00, 0x27, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00))
CONFIG_BASE = 0x08

# Route loss-of-lock to the GPIOs.
LOL_GPIO = [(0x30, 0x0f), (0x34, 0x00), (0x35, 0x00), (0x36, 0x0f)]

def test_encode_multibyte() -> None:
    assert Register.get('pre0').encode(320) == [
        RegisterWrite(0x0b, 0x00), RegisterWrite(0x0c, 0x01),
        RegisterWrite(0x0d, 0x40)]
    assert Register.get('NFRAC_Q2').encode(1 << 27) == [
        RegisterWrite(0x5b, 0x08), RegisterWrite(0x5c, 0),
        RegisterWrite(0x5d, 0), RegisterWrite(0x5e, 0)]
    assert Register.get('DSM_INT').encode(300) == [
        RegisterWrite(0x25, 0x01), RegisterWrite(0x26, 0x2c)]

def test_encode_overflow() -> None:
    import pytest
    from .plan_tools import FieldOverflow
    with pytest.raises(FieldOverflow):
        Register.get('DSM_INT').encode(512)
    with pytest.raises(FieldOverflow):
        Register.get('LOS0').encode(1 << 17)

def test_encode_merge() -> None:
    writes = encode(('DPLL_STATE', STATE_FREERUN), ('REF0_DIS', 1),
                    ('REF1_DIS', 1))
    assert writes == [RegisterWrite(0x0a, 0x31, 0x33)]
    assert encode(('SYN_MODE', 1)) == [RegisterWrite(0x69, 0x08, 0x08)]

def test_masked_bytes() -> None:
    data = MaskedBytes()
    data.M1_0 = 28512
    assert data.M1_0 == 28512
    assert data.data[0x11:0x14] == bytes((0x00, 0x6f, 0x60))
    assert data.ranges() == [(0x11, 3)]
    data.REF1_DIS = 1
    assert data.data[0x0a] == 0x20 and data.mask[0x0a] == 0x20
    assert data.known(0x0a, 0x20) and not data.known(0x0a)
    assert data.extract('REF1_DIS') == 1

def test_config_size() -> None:
    # Covers up to and including the LOS1 registers.
    assert len(CONFIG_JA) == 132
    image = MaskedBytes(CONFIG_JA)
    assert image.known(0x76)

def test_get_suggestion() -> None:
    import pytest
    with pytest.raises(KeyError, match='NFRAC_Q2'):
        Register.get('NFRAC_QQ2')
