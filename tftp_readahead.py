"""
Read-ahead buffering of the outgoing file.

Chunks of exactly BLOCK_SIZE bytes are pulled from the source stream in
batches, so that sending a block rarely waits on a read. The first chunk
shorter than BLOCK_SIZE marks the end of the stream; after it no more reads
are issued.
"""
import logging
from collections import deque

from tftp_packet import BLOCK_SIZE

DEFAULT_READ_AHEAD = 20

logger = logging.getLogger(__name__)


class ReadAheadQueue:
    def __init__(self, stream, chunk_size=BLOCK_SIZE, batch=DEFAULT_READ_AHEAD):
        if chunk_size <= 0 or batch <= 0:
            raise ValueError("chunk_size and batch must be positive")
        self.stream = stream
        self.chunk_size = chunk_size
        self.batch = batch
        self.chunks = deque()
        self.end_of_stream = False
        self.fills = 0

    def __len__(self):
        return len(self.chunks)

    @property
    def exhausted(self):
        return self.end_of_stream and not self.chunks

    def read_chunk(self):
        # Raw streams and pipes may return fewer bytes than asked for without
        # being at EOF, so keep reading until the chunk is full or EOF.
        buf = bytearray()
        while len(buf) < self.chunk_size:
            data = self.stream.read(self.chunk_size - len(buf))
            if not data:
                break
            buf += data
        return bytes(buf)

    def fill(self):
        self.fills += 1
        for _ in range(self.batch):
            chunk = self.read_chunk()
            self.chunks.append(chunk)
            if len(chunk) < self.chunk_size:
                self.end_of_stream = True
                break
        logger.debug(f"Read-ahead fill #{self.fills}: {len(self.chunks)} chunks queued"
                     f"{' [EOF]' if self.end_of_stream else ''}")

    def next(self):
        """Return (chunk, is_final). Calling again after the final chunk has
        been handed out is a programming error."""
        if not self.chunks:
            if self.end_of_stream:
                raise RuntimeError("read-ahead queue already delivered its final chunk")
            self.fill()
        chunk = self.chunks.popleft()
        return chunk, len(chunk) < self.chunk_size
