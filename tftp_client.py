#!/usr/bin/env python3
"""
Lock-step TFTP Client

Pushes a file to a TFTP server with a write request (WRQ) and, for the
reverse direction, fetches one with a read request (RRQ). Transfers always
use "octet" mode and 512-byte blocks.

The request goes to the server's well-known port (69). The server answers
from a fresh port, and every later packet of the transfer is exchanged with
that endpoint only. Each block waits up to 3 seconds for its acknowledgment
and is sent at most twice before the transfer is abandoned.

Design limitations:
1. **Single outstanding block**: throughput is bounded by one block per
   round trip.
2. **16-bit block numbers**: files above 65535 blocks (~32MB) are refused
   instead of wrapping the block counter.
3. **No resumption**: a failed transfer must be restarted from block 1.

Usage examples:
# Terminal 1: Start server
python3 tftp_server.py --config tftp_server_config.yaml

# Terminal 2: Send a file, then fetch it back under another name
python3 tftp_client.py report.pdf --server 127.0.0.1
python3 tftp_client.py copy.pdf --server 127.0.0.1 --get --remote-name report.pdf
"""
import argparse
import logging
import socket
import sys
from pathlib import Path

from tftp_packet import BLOCK_SIZE, MAX_BLOCK_NUMBER, Request, MODE_OCTET
from tftp_readahead import DEFAULT_READ_AHEAD
from tftp_transfer import (
    DEFAULT_RETRIES, DEFAULT_TIMEOUT, TFTP_PORT,
    TransferError, TransferOutcome, TransferSession, is_ack, is_data, resolve_endpoint,
)

logger = logging.getLogger(__name__)


def _failed(message):
    return TransferOutcome(False, 0, 0, 0, 0, failure_message=message)


class TFTPClient:
    def __init__(self, server_host='127.0.0.1', server_port=TFTP_PORT,
                 timeout=DEFAULT_TIMEOUT, retries=DEFAULT_RETRIES, read_ahead=DEFAULT_READ_AHEAD):
        # The request is always sent to (server_host, server_port); the data
        # exchange continues with whatever endpoint answers it.
        self.server_host = server_host
        self.server_port = server_port
        self.timeout = timeout
        self.retries = retries
        self.read_ahead = read_ahead
        self.stats = {'files_sent': 0, 'files_received': 0, 'bytes_sent': 0,
                      'bytes_received': 0, 'resends': 0, 'errors': 0}

    def open_socket(self):
        return socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def new_session(self, sock, progress=None, cancel_event=None):
        return TransferSession(sock, timeout=self.timeout, retries=self.retries,
                               read_ahead=self.read_ahead, progress=progress,
                               cancel_event=cancel_event)

    def send_file(self, local_filepath, remote_filename=None, progress=None, cancel_event=None):
        # Main function to push a file to the server.
        local_path = Path(local_filepath)
        if not local_path.is_file():
            logger.error(f"File not found: {local_filepath}")
            self.stats['errors'] += 1
            return _failed(f"file not found: {local_filepath}")

        # One extra empty block is needed when the size is an exact multiple
        # of the block size, and it counts against the 16-bit block limit.
        try:
            file_size = local_path.stat().st_size
        except OSError as e:
            logger.error(f"Cannot stat {local_path}: {e}")
            self.stats['errors'] += 1
            return _failed(f"cannot stat {local_path}: {e}")
        effective_blocks = file_size // BLOCK_SIZE + 1
        if effective_blocks > MAX_BLOCK_NUMBER:
            logger.error(f"File too large: {file_size:,}B needs {effective_blocks} blocks, "
                         f"max is {MAX_BLOCK_NUMBER}")
            self.stats['errors'] += 1
            return _failed("file too large")

        remote_name = remote_filename or local_path.name
        try:
            server_addr = resolve_endpoint(self.server_host, self.server_port)
        except ValueError as e:
            logger.error(str(e))
            self.stats['errors'] += 1
            return _failed(str(e))

        try:
            f = open(local_path, 'rb')
        except OSError as e:
            logger.error(f"Cannot open {local_path}: {e}")
            self.stats['errors'] += 1
            return _failed(f"cannot open {local_path}: {e}")

        logger.info(f"Sending: {local_filepath} -> {remote_name} ({file_size:,}B)")
        with self.open_socket() as sock, f:
            session = self.new_session(sock, progress, cancel_event)
            try:
                session.request(Request.write(remote_name, MODE_OCTET), server_addr, is_ack(0))
                session.push(f)
            except (TransferError, OSError) as e:
                outcome = session.finish(e)
            else:
                outcome = session.finish()

        self.stats['resends'] += outcome.resends
        if outcome.success:
            self.stats['files_sent'] += 1
            self.stats['bytes_sent'] += outcome.bytes
        else:
            self.stats['errors'] += 1
        return outcome

    def receive_file(self, remote_filename, local_filepath=None, progress=None, cancel_event=None):
        # Fetches remote_filename from the server. The partial local file is
        # removed if the transfer fails.
        local_path = Path(local_filepath or Path(remote_filename).name)
        try:
            server_addr = resolve_endpoint(self.server_host, self.server_port)
        except ValueError as e:
            logger.error(str(e))
            self.stats['errors'] += 1
            return _failed(str(e))

        logger.info(f"Fetching: {remote_filename} -> {local_path}")
        try:
            f = open(local_path, 'wb')
        except OSError as e:
            logger.error(f"Cannot open {local_path}: {e}")
            self.stats['errors'] += 1
            return _failed(f"cannot open {local_path}: {e}")

        with self.open_socket() as sock, f:
            session = self.new_session(sock, progress, cancel_event)
            try:
                first = session.request(Request.read(remote_filename, MODE_OCTET), server_addr,
                                        is_data(1))
                session.pull(f, first=first)
            except (TransferError, OSError) as e:
                outcome = session.finish(e)
            else:
                outcome = session.finish()

        self.stats['resends'] += outcome.resends
        if outcome.success:
            self.stats['files_received'] += 1
            self.stats['bytes_received'] += outcome.bytes
        else:
            self.stats['errors'] += 1
            if local_path.exists():
                local_path.unlink()
                logger.warning(f"Removed incomplete file: {local_path}")
        return outcome


def print_progress(block, bytes_so_far):
    sys.stdout.write(f"\rtransferring: block #{block} ({bytes_so_far:,}B)")
    sys.stdout.flush()


def print_outcome(outcome):
    # Clears the progress line before the summary.
    sys.stdout.write("\r" + " " * 48 + "\r")
    if outcome.success:
        print("tftp: transfer complete")
    else:
        print("tftp: transfer failed")
        print(f"  reason: {outcome.failure_message}")
    print(f"  {outcome.blocks} blocks, {outcome.bytes:,} bytes, {outcome.resends} resends")
    print(f"  elapsed time: {outcome.elapsed_ms} ms ({outcome.rate:,.0f} B/s)")


def main(argv=None):
    parser = argparse.ArgumentParser(description='Lock-step TFTP client (octet mode)')
    parser.add_argument('file', help='Local file to send (or to write with --get)')
    parser.add_argument('--server', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=TFTP_PORT)
    parser.add_argument('--remote-name', help='Name of the file on the server')
    parser.add_argument('--get', action='store_true', help='Fetch from the server instead of sending')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help='Seconds to wait for each reply')
    parser.add_argument('--retries', type=int, default=DEFAULT_RETRIES,
                        help='Transmissions per block before giving up')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args(argv)

    log_format = '%(asctime)s - %(levelname)s - %(message)s'
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format=log_format, handlers=[logging.StreamHandler()])

    client = TFTPClient(args.server, args.port, timeout=args.timeout, retries=args.retries)
    if args.get:
        outcome = client.receive_file(args.remote_name or Path(args.file).name, args.file,
                                      progress=print_progress)
    else:
        outcome = client.send_file(args.file, args.remote_name, progress=print_progress)
    print_outcome(outcome)
    return 0 if outcome.success else 1


if __name__ == '__main__':
    sys.exit(main())
