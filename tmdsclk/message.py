# USB-I2C bridge framing.

import array
import struct

from collections.abc import ByteString
from dataclasses import dataclass
from typing import TypeAlias
from usb.core import Device

Target: TypeAlias = Device | bytearray

MAGIC = b'\xce\x93'

ACK=0x80
NACK=0x81

PING=0x00
GET_PROTOCOL_VERSION=0x02
GET_SERIAL_NUMBER=0x03

I2C_WRITE=0x60
I2C_READ=0x61

# Limit on a whole frame, and hence on the data in one I2C transfer.
FRAME_LIMIT = 64
MAX_WRITE = FRAME_LIMIT - 6 - 3
MAX_READ = FRAME_LIMIT - 6

class TransportError(RuntimeError):
    pass

class RequestFailed(TransportError):
    pass

@dataclass
class Message:
    # Magic is implicit.
    code: int
    # len is implicit in payload.
    payload: bytes
    # CRC is implied.
    def frame(self) -> bytes:
        return frame(self.code, self.payload)
    def __str__(self) -> str:
        return f'{self.code:#06x} ' + self.payload.hex(' ')

POLY = 0x1021
CRCTAB = array.array('H', (0, POLY))

for i in range(1, 128):
    assert len(CRCTAB) == 2 * i
    dbl = CRCTAB[i] << 1
    dbl = min(dbl, dbl ^ POLY ^ 0x10000)
    CRCTAB.extend((dbl, dbl ^ POLY))
assert len(CRCTAB) == 256

def crc16(bb: ByteString) -> int:
    result = 0
    for b in bb:
        result = result << 8 & 0xff00 ^ CRCTAB[result >> 8 ^ b]
    return result

assert crc16(b'123456789') == 0x31c3

def frame(code: int, payload: ByteString, limit: int = FRAME_LIMIT) -> bytes:
    assert len(payload) + 6 <= limit
    message = MAGIC + bytes((code, len(payload))) + payload
    return message + struct.pack('>H', crc16(message))

def deframe(message: bytes) -> Message:
    if len(message) < 6:
        raise ValueError('Under-length message')
    if message[:2] != MAGIC:
        raise ValueError('Incorrect magic')
    if crc16(message) != 0:
        raise ValueError('Bad CRC')
    code = message[2]
    length = message[3]
    if len(message) != length + 6:
        raise ValueError('Length mismatch')

    return Message(code, message[4:-2])

def command(dev: Target, code: int, payload: ByteString,
            expect: int = ACK) -> Message:
    data = frame(code, payload)
    if isinstance(dev, bytearray):
        dev += data
        return Message(ACK, b'')
    dev.write(0x03, data) # type: ignore
    try:
        result = deframe(bytes(dev.read(0x83, FRAME_LIMIT, 10000))) # type: ignore
    except ValueError as e:
        raise RequestFailed(f'Bad reply: {e}') from e
    if expect != NACK and result.code == NACK:
        raise RequestFailed(f'Result code is NACK ' + result.payload.hex(' '))
    if result.code != expect:
        raise RequestFailed(f'Result code is {result.code:#04x}')
    return result

def retrieve(dev: Device, code: int, payload: bytes = b'') -> Message:
    return command(dev, code, payload, expect = code | 0x80)

def ping(dev: Device, payload: bytes) -> bytes:
    resp = retrieve(dev, PING, payload)
    if resp.payload != payload:
        raise RequestFailed('Ping payload mismatch')
    return resp.payload

def get_protocol_version(dev: Device) -> int:
    data = retrieve(dev, GET_PROTOCOL_VERSION, b'')
    return struct.unpack('<I', data.payload)[0]

def get_serial_number(dev: Device) -> bytes:
    return retrieve(dev, GET_SERIAL_NUMBER, b'').payload

def i2c_read(dev: Device, i2c: int, address: int, length: int) -> bytes:
    assert 0 < length <= MAX_READ
    r = retrieve(dev, I2C_READ, struct.pack('>BBH', i2c, length, address))
    if len(r.payload) != length:
        raise RequestFailed(f'Read of {length} returned {len(r.payload)}')
    return r.payload

def i2c_write(dev: Target, i2c: int, address: int, *data: ByteString|int) -> None:
    def bb(x: ByteString|int) -> ByteString:
        return bytes((x,)) if isinstance(x, int) else x
    total = b''.join(map(bb, data))
    assert len(total) <= MAX_WRITE
    command(dev, I2C_WRITE, struct.pack('>BH', i2c, address) + total)

def test_simple() -> None:
    code = 0x12
    payload = b'This is a test'
    assert deframe(frame(code, payload)) == Message(code, payload)

def test_deframe_errors() -> None:
    import pytest
    good = frame(I2C_WRITE, b'\x7c\x00\x70\x05')
    with pytest.raises(ValueError, match='Under-length'):
        deframe(good[:5])
    with pytest.raises(ValueError, match='magic'):
        deframe(b'\0' + good[1:])
    with pytest.raises(ValueError, match='CRC'):
        deframe(good[:-1] + bytes((good[-1] ^ 1,)))

def test_capture() -> None:
    b = bytearray()
    i2c_write(b, 0x7c, 0x0070, 0x05)
    i2c_write(b, 0x7c, 0x000b, b'\x00\x01\x40')
    first = deframe(bytes(b[:10]))
    assert first == Message(I2C_WRITE, b'\x7c\x00\x70\x05')
    second = deframe(bytes(b[10:]))
    assert second.payload == b'\x7c\x00\x0b\x00\x01\x40'
