"""
Lock-step TFTP transfer engine.

A TransferSession drives one file through the block exchange, in either
role:

* sending (client WRQ, server RRQ): DATA n is sent and held until ACK n
  arrives, then DATA n+1 follows. The last block is the first one shorter
  than 512 bytes, so a file whose size is a multiple of 512 ends with an
  empty DATA block.
* receiving (server WRQ, client RRQ): DATA n is written to the sink and
  answered with ACK n. While waiting for DATA n the previous ACK is what
  gets retransmitted.

Every wait is bounded by a fixed timeout. A timeout, an undecodable
datagram or the wrong packet triggers a retransmission of the packet in
flight, at most `retries` transmissions in total per block. Running out of
attempts sends ERROR(Undefined) to the peer and fails the transfer. An
ERROR from the peer fails the transfer at once and is never retried.

The peer endpoint is unset until the first reply arrives (the server
answers from a fresh port, not from the port the request was sent to).
After that, datagrams from any other address are answered with
ERROR(UnknownId) and otherwise ignored.
"""
import enum
import logging
import socket
import time
from dataclasses import dataclass

from tftp_packet import (
    BLOCK_SIZE, MAX_BLOCK_NUMBER, MAX_DATAGRAM,
    Ack, Data, DecodeError, ErrorCode, ErrorPacket, Request, decode,
)
from tftp_readahead import DEFAULT_READ_AHEAD, ReadAheadQueue

TFTP_PORT = 69
DEFAULT_TIMEOUT = 3.0
DEFAULT_RETRIES = 2
POLL_INTERVAL = 0.25  # how often a blocked wait checks for cancellation

logger = logging.getLogger(__name__)


class TransferState(enum.Enum):
    IDLE = 'idle'
    AWAITING_REQUEST_ACK = 'awaiting-request-ack'
    SENDING_BLOCK = 'sending-block'
    AWAITING_BLOCK_ACK = 'awaiting-block-ack'
    AWAITING_BLOCK = 'awaiting-block'
    COMPLETE = 'complete'
    FAILED = 'failed'


class TransferError(Exception):
    pass


class ProtocolError(TransferError):
    # The peer sent a well-formed ERROR packet.
    def __init__(self, code, message):
        super().__init__(f"error from peer ({code.name}): {message}")
        self.code = code
        self.message = message


class MalformedResponse(TransferError):
    pass


class TransferTimeout(TransferError):
    pass


class RetriesExhausted(TransferError):
    pass


class TransferCancelled(TransferError):
    pass


RETRYABLE = (MalformedResponse, TransferTimeout)


@dataclass(frozen=True)
class TransferOutcome:
    success: bool
    blocks: int
    bytes: int
    resends: int
    elapsed_ms: int
    failure_message: str | None = None
    error_code: ErrorCode | None = None

    @property
    def rate(self):
        # Bytes per second.
        return self.bytes * 1000 / self.elapsed_ms if self.elapsed_ms > 0 else 0


def resolve_endpoint(host, port):
    # Turns a host name or dotted quad into an IPv4 (address, port) tuple.
    if not 0 <= port <= 65535:
        raise ValueError(f"invalid port: {port}")
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_DGRAM)
    except socket.gaierror as e:
        raise ValueError(f"cannot resolve {host}: {e}") from e
    return infos[0][4][:2]


def describe(packet):
    if isinstance(packet, Data):
        return f"DATA {packet.block} ({len(packet.payload)}B)"
    if isinstance(packet, Ack):
        return f"ACK {packet.block}"
    if isinstance(packet, ErrorPacket):
        return f"ERROR {packet.code.name} {packet.message!r}"
    return f"{packet.opcode.name} {packet.filename!r} ({packet.mode})"


def is_ack(block):
    return lambda packet: isinstance(packet, Ack) and packet.block == block


def is_data(block):
    return lambda packet: isinstance(packet, Data) and packet.block == block


class TransferSession:
    """State of one transfer: socket, bound peer, counters and timing.

    The session owns nothing but its counters; the caller owns the socket
    and the stream and closes them.
    """

    def __init__(self, sock, peer=None, timeout=DEFAULT_TIMEOUT, retries=DEFAULT_RETRIES,
                 read_ahead=DEFAULT_READ_AHEAD, progress=None, cancel_event=None):
        if timeout <= 0:
            raise ValueError(f"timeout must be positive: {timeout}")
        if retries < 1:
            raise ValueError(f"retries must be at least 1: {retries}")
        self.sock = sock
        self.peer = peer
        self.timeout = timeout
        self.retries = retries
        self.read_ahead = read_ahead
        self.progress = progress
        self.cancel_event = cancel_event
        self.state = TransferState.IDLE
        self.block = 0  # last block acknowledged (sending) or written (receiving)
        self.blocks = 0
        self.bytes = 0
        self.resends = 0
        self.start_time = time.monotonic()
        self.end_time = None

    def bind_peer(self, addr):
        if self.peer is not None:
            raise RuntimeError(f"session already bound to {self.peer}")
        self.peer = addr
        logger.info(f"Session bound to peer {addr[0]}:{addr[1]}")

    def send_packet(self, packet, addr=None):
        target = addr or self.peer
        if target is None:
            raise RuntimeError("no peer endpoint bound")
        logger.debug(f"-> {target[0]}:{target[1]} {describe(packet)}")
        self.sock.sendto(packet.to_bytes(), target)

    def send_error(self, code, message, addr=None):
        # Best effort: the transfer is failing anyway, so a send error here
        # is logged and not raised.
        if (addr or self.peer) is None:
            return
        try:
            self.send_packet(ErrorPacket(code, message), addr)
        except OSError as e:
            logger.warning(f"Could not send error to peer: {e}")

    def cancelled(self):
        return self.cancel_event is not None and self.cancel_event.is_set()

    def receive(self):
        """Wait up to `timeout` seconds for the next packet from the peer.

        Raises TransferTimeout, MalformedResponse, ProtocolError (the peer
        sent ERROR) or TransferCancelled.
        """
        deadline = time.monotonic() + self.timeout
        while True:
            if self.cancelled():
                raise TransferCancelled("transfer cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransferTimeout(f"no response within {self.timeout:g}s")
            self.sock.settimeout(min(remaining, POLL_INTERVAL))
            try:
                raw, addr = self.sock.recvfrom(MAX_DATAGRAM)
            except socket.timeout:
                continue

            if self.peer is None:
                self.bind_peer(addr)
            elif addr != self.peer:
                logger.warning(f"Datagram from unknown endpoint {addr[0]}:{addr[1]}, "
                               f"session is bound to {self.peer[0]}:{self.peer[1]}")
                self.send_error(ErrorCode.UNKNOWN_TRANSFER_ID, "unknown transfer id", addr)
                continue

            try:
                packet = decode(raw)
            except DecodeError as e:
                raise MalformedResponse(f"malformed response: {e}") from e
            logger.debug(f"<- {addr[0]}:{addr[1]} {describe(packet)}")
            if isinstance(packet, ErrorPacket):
                raise ProtocolError(packet.code, packet.message)
            return packet

    def exchange(self, packet, accept, attempts=None, addr=None, give_up='bad ack'):
        # Send `packet` and wait for a reply satisfying `accept`, resending
        # the same packet on timeouts and bad replies.
        attempts = attempts or self.retries
        reason = None
        for attempt in range(1, attempts + 1):
            self.send_packet(packet, addr)
            try:
                reply = self.receive()
            except RETRYABLE as e:
                reason = str(e)
            else:
                if accept(reply):
                    return reply
                reason = f"unexpected {describe(reply)}"
            if attempt < attempts:
                self.resends += 1
                logger.warning(f"{reason}; resending {describe(packet)} "
                               f"(attempt {attempt + 1}/{attempts})")
        self.send_error(ErrorCode.UNDEFINED, give_up)
        raise RetriesExhausted(f"{reason} after {attempts} attempt(s) of {describe(packet)}")

    def request(self, packet, addr, accept):
        """Send a RRQ/WRQ to the rendezvous endpoint and return the accepted
        reply. The request is sent once; there is no retry."""
        if not isinstance(packet, Request):
            raise TypeError(f"not a request: {packet!r}")
        self.state = TransferState.AWAITING_REQUEST_ACK
        logger.info(f"{packet.opcode.name} {packet.filename!r} -> {addr[0]}:{addr[1]}")
        return self.exchange(packet, accept, attempts=1, addr=addr)

    def _check_block_number(self, block):
        if block > MAX_BLOCK_NUMBER:
            self.send_error(ErrorCode.UNDEFINED, "file too large")
            raise TransferError(f"file too large: more than {MAX_BLOCK_NUMBER} blocks")

    def push(self, stream):
        """Sending role: stream the whole file to the bound peer."""
        queue = ReadAheadQueue(stream, BLOCK_SIZE, self.read_ahead)
        block = 1
        while True:
            self.state = TransferState.SENDING_BLOCK
            self._check_block_number(block)
            try:
                chunk, final = queue.next()
            except OSError:
                self.send_error(ErrorCode.ACCESS_VIOLATION, "read failed")
                raise

            self.state = TransferState.AWAITING_BLOCK_ACK
            self.exchange(Data(block, chunk), is_ack(block), give_up='bad ack')
            self.block = block
            self.blocks += 1
            self.bytes += len(chunk)
            if self.progress:
                self.progress(block, self.bytes)
            if final:
                break
            block += 1
        self.state = TransferState.COMPLETE

    def pull(self, sink, first=None):
        """Receiving role: write every block to sink and acknowledge it.

        `first` is block 1 when it already arrived as the answer to our own
        RRQ. Otherwise ACK 0 is sent to ask for it.
        """
        block = 1
        reply = Ack(0)
        data = first
        while True:
            if data is None:
                self._check_block_number(block)
                self.state = TransferState.AWAITING_BLOCK
                data = self.exchange(reply, is_data(block), give_up='bad data')
            try:
                sink.write(data.payload)
            except OSError:
                self.send_error(ErrorCode.DISK_FULL, "write failed")
                raise
            self.block = block
            self.blocks += 1
            self.bytes += len(data.payload)
            reply = Ack(block)
            if self.progress:
                self.progress(block, self.bytes)
            if data.is_final:
                self.send_packet(reply)
                break
            block += 1
            data = None
        self.state = TransferState.COMPLETE

    def finish(self, error=None):
        """Stop the clock and report the outcome of the transfer."""
        self.end_time = time.monotonic()
        elapsed_ms = int((self.end_time - self.start_time) * 1000)
        if error is None:
            self.state = TransferState.COMPLETE
            outcome = TransferOutcome(True, self.blocks, self.bytes, self.resends, elapsed_ms)
            logger.info(f"Transfer complete: {self.blocks} blocks, {self.bytes:,}B, "
                        f"{self.resends} resends, {elapsed_ms} ms ({outcome.rate:,.0f} B/s)")
            return outcome

        self.state = TransferState.FAILED
        code = error.code if isinstance(error, ProtocolError) else None
        logger.error(f"Transfer failed after {self.blocks} blocks, {self.bytes:,}B, "
                     f"{self.resends} resends: {error}")
        return TransferOutcome(False, self.blocks, self.bytes, self.resends, elapsed_ms,
                               failure_message=str(error), error_code=code)
