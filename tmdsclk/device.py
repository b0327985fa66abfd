'''Device access: the USB bridge, and the clock chip behind it.'''

from __future__ import annotations

from . import message
from .idt8t49n24x import CONFIG_JA, REGISTERS, MaskedBytes, Register, \
    RegisterWrite
from .idt8t49n24x_plan import FrequencyRequest, Mode, ReadBack, \
    SynthesizerSettings, achieved_freq, init_writes, make_register_writes, \
    mode_writes, plan_request, ref_input_writes, reverse_plan
from .message import Target, TransportError
from .plan_constants import IDT_8T49N24X, ChipProfile

import argparse
import logging
import threading
import usb.core # pyright: ignore

from collections.abc import Iterable
from fractions import Fraction
from usb.core import Device as USBDevice # pyright: ignore

log = logging.getLogger(__name__)

PRODUCT = 'TMDS Clock'
DEFAULT_I2C_ADDRESS = 0x7c

class Device:
    args: argparse.Namespace | None

    usb: USBDevice | None = None

    def __init__(self, args: argparse.Namespace|None = None):
        self.args = args

    def get_usb(self) -> USBDevice:
        if self.usb is not None:
            return self.usb

        opts = {}
        if self.args and getattr(self.args, 'name', None):
            opts['serial_number'] = self.args.name
        u = list(usb.core.find(True, product=PRODUCT, **opts)) # type: ignore
        if len(u) == 0:
            raise TransportError(f'No {PRODUCT} USB device found')
        if len(u) > 1:
            names = ' '.join(str(d.serial_number) for d in u)
            raise TransportError(
                f'Multiple {PRODUCT} USB devices found, select one with '
                f'--name: {names}')
        assert isinstance(u[0], USBDevice)
        self.usb = u[0]
        # Flush any stale data.
        try:
            self.usb.read(0x83, message.FRAME_LIMIT, 10) # pyright: ignore
        except usb.core.USBTimeoutError:
            pass

        log.debug('Using %s serial %s', PRODUCT, self.usb.serial_number)
        return self.usb

class Clock:
    '''One 8T49N24x behind a bridge.

    All writes go through apply(), which holds a lock for the whole sequence,
    so that concurrent callers never interleave their programming.  We keep
    an image of what we know of the registers, so that masked writes only
    need to read the byte the first time.

    The target may be a bytearray, in which case the frames are captured
    rather than sent, and the image starts out as the default
    configuration.'''

    def __init__(self, target: Target, i2c_address: int = DEFAULT_I2C_ADDRESS,
                 retries: int = 3, chip: ChipProfile = IDT_8T49N24X):
        assert retries >= 1
        self.target = target
        self.i2c_address = i2c_address
        self.retries = retries
        self.chip = chip
        self.lock = threading.Lock()
        if self.offline:
            self.image = MaskedBytes(CONFIG_JA)
        else:
            self.image = MaskedBytes()

    @property
    def offline(self) -> bool:
        return isinstance(self.target, bytearray)

    def _retry(self, what: str, action):
        for attempt in range(1, self.retries + 1):
            try:
                return action()
            except (usb.core.USBError, message.RequestFailed) as e:
                if attempt == self.retries:
                    raise TransportError(
                        f'{what} failed after {attempt} attempts: {e}') from e
                log.warning('%s failed (attempt %d): %s', what, attempt, e)

    def _load(self, base: int, span: int) -> None:
        '''Read registers into the image.  Caller holds the lock.'''
        if self.offline:
            if not all(self.image.known(i) for i in range(base, base + span)):
                raise TransportError(
                    f'Register {base:#06x} unknown with no device')
            return
        for start in range(base, base + span, message.MAX_READ):
            length = min(message.MAX_READ, base + span - start)
            data = self._retry(
                f'Read {start:#06x}',
                lambda: message.i2c_read(self.target, self.i2c_address, # type: ignore
                                         start, length))
            self.image.data[start : start + length] = data
            self.image.mask[start : start + length] = b'\xff' * length

    def _write(self, w: RegisterWrite) -> None:
        '''One register write, merged with the image for a masked write.
        Caller holds the lock.'''
        if not self.image.known(w.address, ~w.mask & 0xff):
            self._load(w.address, 1)
        value = self.image.data[w.address] & ~w.mask | w.value & w.mask
        self._retry(f'Write {w.address:#06x}',
                    lambda: message.i2c_write(
                        self.target, self.i2c_address, w.address, value))
        self.image.apply(RegisterWrite(w.address, value))

    def apply(self, writes: Iterable[RegisterWrite]) -> None:
        '''Write a sequence.  Any failure aborts the remainder, so a sequence
        that ends by releasing calibration leaves it held.'''
        with self.lock:
            for w in writes:
                log.debug('write %s', w)
                self._write(w)

    def read(self, registers: Iterable[Register|str]) -> MaskedBytes:
        '''Fetch the given registers from the device.'''
        wanted = MaskedBytes()
        for r in registers:
            wanted.insert(r, 0)
        with self.lock:
            if not self.offline:
                # Always go to the device for reads, the status may change.
                for base, span in wanted.ranges(max_block = message.MAX_READ):
                    self.image.mask[base : base + span] = bytes(span)
            for base, span in wanted.ranges(max_block = message.MAX_READ):
                self._load(base, span)
            result = MaskedBytes()
            result.data[:] = self.image.data
            result.mask[:] = wanted.mask
        return result

    def dump(self) -> MaskedBytes:
        return self.read(REGISTERS.values())

    def init(self) -> None:
        log.info('Loading default configuration')
        self.apply(init_writes())

    def set_mode(self, mode: Mode) -> None:
        log.info('Mode %s', mode.value)
        self.apply(mode_writes(mode))

    def set_input(self, input: int, enable: bool) -> None:
        self.apply(ref_input_writes(input, enable))

    def set_clock(self, settings: SynthesizerSettings,
                  program_q0: bool = False) -> None:
        log.info('Programming VCO %d Hz, output %d Hz',
                 settings.vco.vco_freq, settings.request.freq_out)
        self.apply(make_register_writes(settings, program_q0))

    def set_rate(self, request: FrequencyRequest,
                 program_q0: bool = False) -> SynthesizerSettings:
        '''Plan and program.  Nothing is written if planning fails.'''
        settings = plan_request(request, self.chip)
        self.set_clock(settings, program_q0)
        return settings

    def round_rate(self, request: FrequencyRequest) -> Fraction:
        return achieved_freq(plan_request(request, self.chip), self.chip)

    def recalc_rate(self) -> ReadBack:
        names = ('DSM_INT', 'DSM_FRAC', 'N_Q2', 'NFRAC_Q2', 'PRE0', 'M1_0',
                 'LOS0', 'SYN_MODE')
        return reverse_plan(self.read(names), self.chip)
