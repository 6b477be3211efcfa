"""
TFTP packet codec (RFC 1350, octet mode only).

Every packet starts with a 2-byte big-endian opcode. Requests carry two
NUL-terminated strings (filename, mode), DATA carries a block number and up
to 512 payload bytes, ACK carries only a block number and ERROR carries an
error code plus a NUL-terminated message.

Each call to encode/decode works on its own buffer; nothing is cached or
shared between calls.
"""
import enum
import struct
from dataclasses import dataclass

BLOCK_SIZE = 512
MAX_BLOCK_NUMBER = 65535
MODE_OCTET = 'octet'

# Largest datagram a peer may legitimately send us: opcode + block + payload.
# Requests and errors can be longer in theory, so receive with some headroom.
MAX_DATAGRAM = 4 + BLOCK_SIZE + 1024

_HEADER = struct.Struct('!HH')
_OPCODE = struct.Struct('!H')


class Opcode(enum.IntEnum):
    RRQ = 1
    WRQ = 2
    DATA = 3
    ACK = 4
    ERROR = 5


class ErrorCode(enum.IntEnum):
    UNDEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TRANSFER_ID = 5
    FILE_EXISTS = 6
    NO_SUCH_USER = 7


class DecodeError(ValueError):
    pass


def _check_block(block):
    if not 0 <= block <= MAX_BLOCK_NUMBER:
        raise ValueError(f"block number out of range: {block}")


def _text(value):
    raw = value.encode('utf-8')
    if b'\x00' in raw:
        raise ValueError(f"NUL byte not allowed in {value!r}")
    return raw + b'\x00'


@dataclass(frozen=True, slots=True)
class Request:
    opcode: Opcode
    filename: str
    mode: str = MODE_OCTET

    @property
    def is_write(self):
        return self.opcode == Opcode.WRQ

    def to_bytes(self):
        if self.opcode not in (Opcode.RRQ, Opcode.WRQ):
            raise ValueError(f"not a request opcode: {self.opcode!r}")
        if not self.filename:
            raise ValueError("empty filename")
        return _OPCODE.pack(self.opcode) + _text(self.filename) + _text(self.mode)

    @staticmethod
    def read(filename, mode=MODE_OCTET):
        return Request(Opcode.RRQ, filename, mode)

    @staticmethod
    def write(filename, mode=MODE_OCTET):
        return Request(Opcode.WRQ, filename, mode)


@dataclass(frozen=True, slots=True)
class Data:
    block: int
    payload: bytes = b''

    @property
    def is_final(self):
        return len(self.payload) < BLOCK_SIZE

    def to_bytes(self):
        _check_block(self.block)
        if len(self.payload) > BLOCK_SIZE:
            raise ValueError(f"payload too large: {len(self.payload)}")
        return _HEADER.pack(Opcode.DATA, self.block) + bytes(self.payload)


@dataclass(frozen=True, slots=True)
class Ack:
    block: int

    def to_bytes(self):
        _check_block(self.block)
        return _HEADER.pack(Opcode.ACK, self.block)


@dataclass(frozen=True, slots=True)
class ErrorPacket:
    code: ErrorCode
    message: str = ''

    def to_bytes(self):
        return _HEADER.pack(Opcode.ERROR, int(self.code)) + _text(self.message)


def encode(packet):
    return packet.to_bytes()


def _split_strings(body, count):
    # Pulls `count` NUL-terminated UTF-8 strings off the front of body.
    fields = []
    for _ in range(count):
        end = body.find(b'\x00')
        if end < 0:
            raise DecodeError("missing NUL terminator")
        try:
            fields.append(body[:end].decode('utf-8'))
        except UnicodeDecodeError as e:
            raise DecodeError(f"undecodable text: {e}") from e
        body = body[end + 1:]
    return fields, body


def decode(raw):
    """Decode one datagram into a packet, raising DecodeError if it is not
    a well-formed TFTP packet."""
    raw = bytes(raw)
    if len(raw) < 2:
        raise DecodeError(f"datagram too short: {len(raw)} bytes")
    (value,) = _OPCODE.unpack_from(raw)
    try:
        opcode = Opcode(value)
    except ValueError:
        raise DecodeError(f"unknown opcode {value}") from None

    if opcode in (Opcode.RRQ, Opcode.WRQ):
        (filename, mode), _ = _split_strings(raw[2:], 2)
        if not filename:
            raise DecodeError("empty filename")
        return Request(opcode, filename, mode)

    if len(raw) < 4:
        raise DecodeError(f"truncated {opcode.name} packet: {len(raw)} bytes")
    _, number = _HEADER.unpack_from(raw)

    if opcode == Opcode.DATA:
        payload = raw[4:]
        if len(payload) > BLOCK_SIZE:
            raise DecodeError(f"DATA payload too large: {len(payload)} bytes")
        return Data(number, payload)

    if opcode == Opcode.ACK:
        if len(raw) != 4:
            raise DecodeError(f"ACK has {len(raw) - 4} trailing bytes")
        return Ack(number)

    try:
        code = ErrorCode(number)
    except ValueError:
        raise DecodeError(f"unknown error code {number}") from None
    (message,), _ = _split_strings(raw[4:], 1)
    return ErrorPacket(code, message)
