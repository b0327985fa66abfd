from .device import Clock
from .idt8t49n24x import CAL_HOLD, RegisterWrite
from .idt8t49n24x_plan import FrequencyRequest, Mode, make_register_writes, \
    plan
from .message import I2C_READ, I2C_WRITE, PING, Message, TransportError, \
    deframe, frame, ping

import struct
import threading
import time

import pytest
import usb.core

class FakeBridge:
    '''Stands in for the USB bridge and the chip behind it.'''
    def __init__(self, regs: bytes = b''):
        self.regs = bytearray(256)
        self.regs[:len(regs)] = regs
        self.writes: list[tuple[int, bytes]] = []
        self.reads: list[tuple[int, int]] = []
        self.responses: list[bytes] = []
        # Address -> number of failures still to inject.
        self.fail: dict[int, int] = {}
        self.delay = 0.0

    def write(self, ep: int, data: bytes, timeout: int|None = None) -> int:
        assert ep == 0x03
        msg = deframe(bytes(data))
        if msg.code == I2C_WRITE:
            i2c, address = struct.unpack('>BH', msg.payload[:3])
            assert i2c == 0x7c
            if self.fail.get(address, 0) > 0:
                self.fail[address] -= 1
                raise usb.core.USBError('injected')
            time.sleep(self.delay)
            payload = msg.payload[3:]
            self.regs[address : address + len(payload)] = payload
            self.writes.append((address, bytes(payload)))
            self.responses.append(frame(0x80, b''))
        elif msg.code == I2C_READ:
            i2c, length, address = struct.unpack('>BBH', msg.payload)
            self.reads.append((address, length))
            self.responses.append(
                frame(I2C_READ | 0x80, self.regs[address : address + length]))
        elif msg.code == PING:
            self.responses.append(frame(PING | 0x80, msg.payload))
        else:
            self.responses.append(frame(0x81, b''))
        return len(data)

    def read(self, ep: int, size: int, timeout: int|None = None) -> bytes:
        assert ep == 0x83
        return self.responses.pop(0)

def test_ping() -> None:
    assert ping(FakeBridge(), b'hello') == b'hello' # type: ignore

def test_nack() -> None:
    from .message import RequestFailed, command
    with pytest.raises(RequestFailed):
        command(FakeBridge(), 0x42, b'') # type: ignore

def test_set_clock() -> None:
    bridge = FakeBridge()
    clock = Clock(bridge) # type: ignore
    settings = clock.set_rate(FrequencyRequest(40_000_000, 148_500_000))
    assert bridge.writes[0] == (0x70, bytes((CAL_HOLD,)))
    assert bridge.writes[-1] == (0x70, b'\x00')
    # 0x0a and 0x69 are shared, so get read once each.
    assert bridge.reads == [(0x0a, 1), (0x69, 1)]
    assert len(bridge.writes) == len(make_register_writes(settings))
    rb = clock.recalc_rate()
    assert rb.divider == 24 and rb.prescaler == 320
    assert rb.mode == Mode.FREE_RUN_SYNTHESIZER

def test_masked_read_modify_write() -> None:
    bridge = FakeBridge(bytes(10) + b'\xc0')
    clock = Clock(bridge) # type: ignore
    clock.apply([RegisterWrite(0x0a, 0x10, 0x10)])
    assert bridge.regs[0x0a] == 0xd0
    clock.apply([RegisterWrite(0x0a, 0x00, 0x10),
                 RegisterWrite(0x0a, 0x20, 0x20)])
    assert bridge.regs[0x0a] == 0xe0
    # Only the first masked write needed the read.
    assert bridge.reads == [(0x0a, 1)]

def test_failure_leaves_calibration_held() -> None:
    bridge = FakeBridge()
    bridge.fail[0x0b] = 100
    clock = Clock(bridge, retries=3) # type: ignore
    with pytest.raises(TransportError, match='0x000b'):
        clock.set_clock(plan(40_000_000, 148_500_000))
    assert bridge.regs[0x70] == CAL_HOLD
    assert (0x70, b'\x00') not in bridge.writes
    # Everything after the failing write was abandoned.
    assert [a for a, _ in bridge.writes] == [0x70, 0x0a, 0x0a, 0x0a, 0x69]

def test_transient_failure_retried() -> None:
    bridge = FakeBridge()
    bridge.fail[0x0b] = 2
    clock = Clock(bridge, retries=3) # type: ignore
    clock.set_clock(plan(40_000_000, 148_500_000))
    assert bridge.writes[-1] == (0x70, b'\x00')
    assert bridge.fail[0x0b] == 0

class CorruptingBridge(FakeBridge):
    '''Flips a CRC bit in the first few replies.'''
    def __init__(self, corrupt: int):
        super().__init__()
        self.corrupt = corrupt

    def read(self, ep: int, size: int, timeout: int|None = None) -> bytes:
        reply = super().read(ep, size, timeout)
        if self.corrupt > 0:
            self.corrupt -= 1
            reply = reply[:-1] + bytes((reply[-1] ^ 1,))
        return reply

def test_bad_reply_retried() -> None:
    bridge = CorruptingBridge(1)
    clock = Clock(bridge, retries=3) # type: ignore
    clock.apply([RegisterWrite(0x70, 0x05)])
    assert bridge.corrupt == 0
    assert bridge.regs[0x70] == 0x05
    assert clock.image.CAL_CTRL == 0x05

def test_bad_reply_exhausted() -> None:
    bridge = CorruptingBridge(100)
    clock = Clock(bridge, retries=3) # type: ignore
    with pytest.raises(TransportError, match='Bad CRC'):
        clock.apply([RegisterWrite(0x70, 0x05)])
    assert bridge.corrupt == 97

def test_serialized() -> None:
    '''Two programming sequences from different threads must not
    interleave.'''
    bridge = FakeBridge()
    bridge.delay = 0.0005
    clock = Clock(bridge) # type: ignore
    a = plan(40_000_000, 148_500_000)
    b = plan(40_000_000, 297_000_000)
    threads = [threading.Thread(target=clock.set_clock, args=(s,))
               for s in (a, b)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    holds = [i for i, w in enumerate(bridge.writes)
             if w == (0x70, bytes((CAL_HOLD,)))]
    runs = [i for i, w in enumerate(bridge.writes) if w == (0x70, b'\x00')]
    assert len(holds) == len(runs) == 2
    # Each hold is followed by its own release before the next hold.
    assert holds[0] < runs[0] < holds[1] < runs[1]

def test_planning_failure_writes_nothing() -> None:
    from .plan_tools import OutOfRange
    bridge = FakeBridge()
    clock = Clock(bridge) # type: ignore
    with pytest.raises(OutOfRange):
        clock.set_rate(FrequencyRequest(40_000_000, 500_000_000))
    assert bridge.writes == []

def test_offline_capture() -> None:
    capture = bytearray()
    clock = Clock(capture)
    clock.set_clock(plan(40_000_000, 148_500_000))
    first = deframe(bytes(capture[:10]))
    assert first == Message(I2C_WRITE, b'\x7c\x00\x70\x05')
    # The default configuration gives a 148.5MHz jitter attenuator.
    clock = Clock(bytearray())
    rb = clock.recalc_rate()
    assert rb.divider == 22
    assert rb.mode == Mode.JITTER_ATTENUATOR
    assert abs(rb.freq_out - 148_500_000) < 1
    assert abs(rb.freq_in - 148_500_000) < 1

def test_offline_unknown() -> None:
    clock = Clock(bytearray())
    with pytest.raises(TransportError):
        clock.apply([RegisterWrite(0xa0, 0x01, 0x01)])

def test_init() -> None:
    bridge = FakeBridge()
    clock = Clock(bridge) # type: ignore
    clock.init()
    assert bridge.writes[0] == (0x70, bytes((CAL_HOLD,)))
    assert (0x70, b'\x00') in bridge.writes
    assert bridge.regs[0x30] == 0x0f and bridge.regs[0x36] == 0x0f
    assert bridge.reads == []

def test_round_rate() -> None:
    clock = Clock(FakeBridge()) # type: ignore
    rate = clock.round_rate(FrequencyRequest(40_000_000, 148_500_000))
    assert abs(rate - 148_500_000) < 1
