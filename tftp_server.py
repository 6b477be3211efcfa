#!/usr/bin/env python3
"""
Lock-step TFTP Server

Listens on the well-known TFTP port (69) for read (RRQ) and write (WRQ)
requests and serves every accepted request as an independent session: a
worker thread with its own ephemeral UDP socket, bound to the requesting
client's address for the rest of the transfer.

Key design choices:
1. **Octet only**: requests in any other mode are refused with
   ERROR(IllegalOp). No netascii line-ending translation is done.
2. **Flat root directory**: requested names are reduced to a bare, sanitized
   file name inside `root_dir`, so a request can never escape it.
3. **Atomic uploads**: a WRQ is written to a uniquely named `.part` file and
   renamed into place only once the last block has been acknowledged. A
   failed upload leaves nothing behind.
4. **No silent overwrite**: a WRQ for an existing file is refused with
   ERROR(FileExists) unless `allow_overwrite` is set.

Configuration is a YAML file whose keys override the defaults below.

Usage examples:
# Start server on port 69 (needs privileges) serving ./tftp_root
python3 tftp_server.py --config tftp_server_config.yaml
"""
import argparse
import errno
import logging
import os
import socket
import sys
import threading
import uuid
from collections import defaultdict
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from tftp_packet import MAX_DATAGRAM, MODE_OCTET, DecodeError, ErrorCode, ErrorPacket, Request, decode
from tftp_readahead import DEFAULT_READ_AHEAD
from tftp_transfer import (
    DEFAULT_RETRIES, DEFAULT_TIMEOUT, TFTP_PORT,
    TransferError, TransferSession,
)

DEFAULT_CONFIG = {
    'host': '0.0.0.0',
    'port': TFTP_PORT,
    'root_dir': './tftp_root',
    'timeout': DEFAULT_TIMEOUT,
    'retries': DEFAULT_RETRIES,
    'read_ahead': DEFAULT_READ_AHEAD,
    'max_transfers': 10,
    'allow_overwrite': False,
    'log_file': 'tftp_server.log',
    'log_level': 'INFO',
}

logger = logging.getLogger(__name__)


def load_config(config_file=None, overrides=None):
    # Defaults, then the YAML file, then explicit overrides.
    config = dict(DEFAULT_CONFIG)
    for source in (config_file, overrides):
        if source is None:
            continue
        if isinstance(source, dict):
            values = source
        else:
            with open(source, 'r') as f:
                values = yaml.safe_load(f) or {}
        if not isinstance(values, dict):
            raise ValueError(f"config must be a mapping, got {type(values).__name__}")
        unknown = set(values) - set(DEFAULT_CONFIG)
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(sorted(unknown))}")
        config.update(values)
    return config


class TFTPServer:
    def __init__(self, config_file=None, **overrides):
        self.config = load_config(config_file, overrides)
        self.logger = logger
        self.root_dir = Path(self.config['root_dir']).resolve()
        self.root_dir.mkdir(parents=True, exist_ok=True)
        # Running sessions keyed by client (address, port). Each one has its
        # own socket and thread; only stats and reserved_paths are shared.
        self.active_transfers = {}
        self.reserved_paths = {}  # client addr -> WRQ target being written
        self.transfer_lock = threading.Lock()
        self.running = False
        self.sock = None
        self.server_address = None
        self.stats = defaultdict(int)

    def setup_logging(self):
        # Console output plus, when log_file is set, a rotating log file.
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        handlers = [logging.StreamHandler()]
        if self.config['log_file']:
            handlers.append(RotatingFileHandler(self.config['log_file'],
                                                maxBytes=10*1024*1024, backupCount=5))
        for handler in handlers:
            handler.setFormatter(formatter)
        logging.basicConfig(level=self.config['log_level'], handlers=handlers)
        return self.logger

    def count(self, key, amount=1):
        with self.transfer_lock:
            self.stats[key] += amount

    def sanitize_filename(self, name):
        # Reduces a requested name to a bare file name with a safe character
        # set, so no request can reach outside root_dir.
        name = name.replace('\\', '/').replace('\x00', '')
        name = Path(name).name
        if name.upper() in ['CON', 'PRN', 'AUX', 'NUL']:
            name = f"unsafe_{name}"
        safe = ''.join(c for c in name if c.isalnum() or c in '._-')
        if safe.startswith('.'):
            safe = 'dot_' + safe[1:]
        return safe[:200] or 'unknown_file'

    def resolve_path(self, filename):
        return self.root_dir / self.sanitize_filename(filename)

    def reject(self, addr, code, message):
        # Errors for refused requests go out from the listening socket.
        self.logger.warning(f"Rejecting request from {addr[0]}:{addr[1]}: {message}")
        self.count('requests_rejected')
        try:
            self.sock.sendto(ErrorPacket(code, message).to_bytes(), addr)
        except OSError as e:
            self.logger.warning(f"Could not send error to {addr[0]}:{addr[1]}: {e}")

    def negotiate(self, data, addr):
        """Decode the first datagram of a session. Returns the Request, or
        None after answering anything that is neither RRQ nor WRQ."""
        try:
            packet = decode(data)
        except DecodeError as e:
            self.logger.debug(f"Undecodable request from {addr[0]}:{addr[1]}: {e}")
            packet = None
        if not isinstance(packet, Request):
            self.reject(addr, ErrorCode.UNDEFINED, "bad request")
            return None
        if packet.mode.lower() != MODE_OCTET:
            self.reject(addr, ErrorCode.ILLEGAL_OPERATION, f"unsupported mode {packet.mode!r}")
            return None
        return packet

    def handle_request(self, data, addr):
        request = self.negotiate(data, addr)
        if request is None:
            return

        with self.transfer_lock:
            if addr in self.active_transfers:
                self.logger.warning(f"Duplicate request from {addr[0]}:{addr[1]} ignored")
                return
            busy = len(self.active_transfers) >= self.config['max_transfers']
        if busy:
            self.reject(addr, ErrorCode.UNDEFINED, "server busy")
            return

        path = self.resolve_path(request.filename)
        self.logger.info(f"{request.opcode.name} from {addr[0]}:{addr[1]} - File: {request.filename}")
        self.logger.info(f"    -> Path: {path}")

        if request.is_write:
            # The target stays reserved until the session ends, so a second
            # WRQ for the same name cannot race the first one's rename.
            with self.transfer_lock:
                in_flight = path in self.reserved_paths.values()
                taken = in_flight or (path.exists() and not self.config['allow_overwrite'])
                if not taken:
                    self.reserved_paths[addr] = path
            if taken:
                reason = "is being written" if in_flight else "already exists"
                self.reject(addr, ErrorCode.FILE_EXISTS, f"{path.name} {reason}")
                return
            target, args = self.serve_write, (path,)
        else:
            try:
                stream = open(path, 'rb')
            except FileNotFoundError:
                self.reject(addr, ErrorCode.FILE_NOT_FOUND, f"{path.name} not found")
                return
            except OSError as e:
                self.reject(addr, ErrorCode.ACCESS_VIOLATION, f"cannot read {path.name}: {e.strerror}")
                return
            target, args = self.serve_read, (stream,)

        thread = threading.Thread(target=self.run_session, args=(target, addr) + args,
                                  name=f"tftp-{addr[0]}:{addr[1]}", daemon=True)
        with self.transfer_lock:
            self.active_transfers[addr] = thread
            self.stats['transfers_started'] += 1
        thread.start()

    def run_session(self, target, addr, *args):
        # Worker thread: one socket, one session, one client.
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.bind((self.config['host'], 0))
                session = TransferSession(sock, peer=addr, timeout=self.config['timeout'],
                                          retries=self.config['retries'],
                                          read_ahead=self.config['read_ahead'])
                outcome = target(session, *args)
            self.count('resends', outcome.resends)
            self.count('transfers_completed' if outcome.success else 'transfers_failed')
        except Exception as e:
            self.logger.exception(f"Session with {addr[0]}:{addr[1]} crashed: {e}")
            self.count('errors')
        finally:
            with self.transfer_lock:
                self.active_transfers.pop(addr, None)
                self.reserved_paths.pop(addr, None)

    def serve_write(self, session, final_path):
        # Receives into a temp file, renamed into place only on success.
        temp_path = self.root_dir / f"{uuid.uuid4()}.part"
        try:
            f = open(temp_path, 'wb')
        except OSError as e:
            self.logger.error(f"Cannot create {temp_path}: {e}")
            code = ErrorCode.DISK_FULL if e.errno == errno.ENOSPC else ErrorCode.ACCESS_VIOLATION
            session.send_error(code, "cannot create file")
            self.logger.info(f"TRANSFER FAILED: {final_path.name}")
            return session.finish(e)

        with f:
            try:
                session.pull(f)
                f.flush()
                os.fsync(f.fileno())
            except (TransferError, OSError) as e:
                outcome = session.finish(e)
            else:
                outcome = session.finish()

        if outcome.success:
            try:
                temp_path.replace(final_path)
                final_path.chmod(0o644)
            except OSError as e:
                self.logger.error(f"Rename failed: {e}")
                temp_path.unlink(missing_ok=True)
                return session.finish(e)
            self.count('files_received')
            self.count('bytes_received', outcome.bytes)
            self.logger.info(f"TRANSFER SUCCESS: {final_path.name} ({outcome.bytes:,}B, "
                             f"{outcome.elapsed_ms} ms, {outcome.rate:,.0f}B/s)")
        else:
            if temp_path.exists():
                temp_path.unlink()
                self.logger.warning(f"Removed incomplete file: {temp_path}")
            self.logger.info(f"TRANSFER FAILED: {final_path.name}")
        return outcome

    def serve_read(self, session, stream):
        with stream:
            try:
                session.push(stream)
            except (TransferError, OSError) as e:
                outcome = session.finish(e)
            else:
                outcome = session.finish()
        if outcome.success:
            self.count('files_sent')
            self.count('bytes_sent', outcome.bytes)
            self.logger.info(f"TRANSFER SUCCESS: sent {Path(stream.name).name} ({outcome.bytes:,}B, "
                             f"{outcome.elapsed_ms} ms)")
        else:
            self.logger.info(f"TRANSFER FAILED: {Path(stream.name).name}")
        return outcome

    def bind(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind((self.config['host'], self.config['port']))
        # The timeout lets the main loop notice stop() within a second.
        self.sock.settimeout(1.0)
        self.server_address = self.sock.getsockname()
        self.running = True
        self.logger.info(f"Listening on {self.server_address[0]}:{self.server_address[1]}, "
                         f"serving {self.root_dir}")
        return self.server_address

    def serve_forever(self):
        while self.running:
            try:
                data, addr = self.sock.recvfrom(MAX_DATAGRAM)
            except socket.timeout:
                continue
            except OSError as e:
                if not self.running:
                    break
                self.logger.error(f"Receive failed: {e}")
                self.count('errors')
                continue
            try:
                self.handle_request(data, addr)
            except Exception as e:
                self.logger.error(f"Main loop error: {e}")
                self.count('errors')

    def stop(self, wait=None):
        # Stops accepting requests and waits for running sessions.
        self.running = False
        with self.transfer_lock:
            threads = list(self.active_transfers.values())
        for thread in threads:
            thread.join(wait)

    def close(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def start(self):
        print("Starting lock-step TFTP server (octet mode)")
        print(f"Config: {dict(self.config)}")
        print("-" * 70)
        self.bind()
        try:
            self.serve_forever()
        finally:
            self.stop()
            self.close()
            self.print_stats()

    def print_stats(self):
        print("\n" + "="*70)
        print("TFTP SERVER STATISTICS")
        print("="*70)
        print(f"Files received:      {self.stats['files_received']}")
        print(f"Bytes received:      {self.stats['bytes_received']:,}")
        print(f"Files sent:          {self.stats['files_sent']}")
        print(f"Bytes sent:          {self.stats['bytes_sent']:,}")
        print(f"Transfers completed: {self.stats['transfers_completed']}")
        print(f"Transfers failed:    {self.stats['transfers_failed']}")
        print(f"Requests rejected:   {self.stats['requests_rejected']}")
        print(f"Resends:             {self.stats['resends']}")
        print("="*70)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Lock-step TFTP server (octet mode)')
    parser.add_argument('--config', help='YAML config file')
    args = parser.parse_args(argv)
    server = TFTPServer(args.config)
    server.setup_logging()
    try:
        server.start()
    except KeyboardInterrupt:
        server.running = False
    return 0


if __name__ == '__main__':
    sys.exit(main())
