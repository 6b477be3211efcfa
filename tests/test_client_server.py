import os
import shutil
import socket
import threading
import time

import pytest

import tftp_client
from tftp_client import TFTPClient
from tftp_packet import Ack, Data, ErrorCode, ErrorPacket, Request, decode
from tftp_server import TFTPServer, load_config


@pytest.fixture
def server(tmp_path):
    srv = TFTPServer(host='127.0.0.1', port=0, root_dir=str(tmp_path / 'root'),
                     timeout=1.0, log_file=None)
    srv.bind()
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.stop(wait=5)
    thread.join(5)
    srv.close()


@pytest.fixture
def client(server):
    return TFTPClient('127.0.0.1', server.server_address[1], timeout=1.0)


def wait_for(condition, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def raw_exchange(server, packet_bytes):
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.settimeout(2.0)
        sock.sendto(packet_bytes, server.server_address)
        raw, addr = sock.recvfrom(1024)
    return decode(raw), addr


@pytest.mark.parametrize('size', [0, 1000, 1024, 5000])
def test_upload(server, client, tmp_path, size):
    payload = os.urandom(size)
    src = tmp_path / 'upload.bin'
    src.write_bytes(payload)

    outcome = client.send_file(src)

    assert outcome.success, outcome.failure_message
    assert outcome.blocks == size // 512 + 1
    assert outcome.bytes == size
    assert outcome.resends == 0
    target = server.root_dir / 'upload.bin'
    assert wait_for(target.exists)
    assert target.read_bytes() == payload
    assert not list(server.root_dir.glob('*.part'))


def test_upload_under_remote_name(server, client, tmp_path):
    src = tmp_path / 'local.txt'
    src.write_bytes(b'hello tftp')
    assert client.send_file(src, 'renamed.txt').success
    assert wait_for((server.root_dir / 'renamed.txt').exists)
    assert client.stats['files_sent'] == 1


def test_upload_refuses_existing_file(server, client, tmp_path):
    (server.root_dir / 'taken.txt').write_bytes(b'old')
    src = tmp_path / 'taken.txt'
    src.write_bytes(b'new')

    outcome = client.send_file(src)

    assert not outcome.success
    assert outcome.error_code == ErrorCode.FILE_EXISTS
    assert outcome.blocks == 0
    assert (server.root_dir / 'taken.txt').read_bytes() == b'old'


def test_upload_overwrite_allowed(tmp_path):
    srv = TFTPServer(host='127.0.0.1', port=0, root_dir=str(tmp_path / 'root'),
                     timeout=1.0, log_file=None, allow_overwrite=True)
    srv.bind()
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    try:
        (srv.root_dir / 'taken.txt').write_bytes(b'old')
        src = tmp_path / 'taken.txt'
        src.write_bytes(b'new')
        outcome = TFTPClient('127.0.0.1', srv.server_address[1], timeout=1.0).send_file(src)
        assert outcome.success
        assert wait_for(lambda: (srv.root_dir / 'taken.txt').read_bytes() == b'new')
    finally:
        srv.stop(wait=5)
        thread.join(5)
        srv.close()


def test_upload_missing_local_file(client, tmp_path):
    outcome = client.send_file(tmp_path / 'nope.bin')
    assert not outcome.success
    assert 'not found' in outcome.failure_message


def test_upload_path_is_confined_to_root(server, client, tmp_path):
    src_dir = tmp_path / 'src'
    src_dir.mkdir()
    src = src_dir / 'evil.txt'
    src.write_bytes(b'x')
    assert client.send_file(src, '../../evil.txt').success
    assert wait_for((server.root_dir / 'evil.txt').exists)
    assert not (server.root_dir.parent / 'evil.txt').exists()


def test_download(server, client, tmp_path):
    payload = os.urandom(1536)
    (server.root_dir / 'fw.bin').write_bytes(payload)
    dest = tmp_path / 'fw-copy.bin'

    outcome = client.receive_file('fw.bin', dest)

    assert outcome.success, outcome.failure_message
    assert outcome.blocks == 4
    assert dest.read_bytes() == payload
    assert wait_for(lambda: server.stats['files_sent'] == 1)


def test_download_missing_file(server, client, tmp_path):
    dest = tmp_path / 'missing.bin'
    outcome = client.receive_file('missing.bin', dest)
    assert not outcome.success
    assert outcome.error_code == ErrorCode.FILE_NOT_FOUND
    assert not dest.exists()


def test_non_request_is_rejected(server):
    packet, addr = raw_exchange(server, Ack(0).to_bytes())
    assert packet == ErrorPacket(ErrorCode.UNDEFINED, 'bad request')
    assert addr[1] == server.server_address[1]


def test_garbage_is_rejected(server):
    packet, _ = raw_exchange(server, b'\x00\x63junk')
    assert packet == ErrorPacket(ErrorCode.UNDEFINED, 'bad request')


def test_netascii_is_rejected(server):
    packet, _ = raw_exchange(server, Request.write('a.txt', 'netascii').to_bytes())
    assert isinstance(packet, ErrorPacket)
    assert packet.code == ErrorCode.ILLEGAL_OPERATION


def test_session_answers_from_a_new_port(server):
    packet, addr = raw_exchange(server, Request.write('fresh.txt').to_bytes())
    assert packet == Ack(0)
    assert addr[1] != server.server_address[1]


def test_server_stats_after_upload(server, client, tmp_path):
    src = tmp_path / 'stats.bin'
    src.write_bytes(b's' * 700)
    assert client.send_file(src).success
    assert wait_for(lambda: server.stats['files_received'] == 1)
    assert server.stats['bytes_received'] == 700
    assert wait_for(lambda: server.stats['transfers_completed'] == 1)


def test_progress_callback(server, client, tmp_path):
    src = tmp_path / 'p.bin'
    src.write_bytes(b'p' * 1100)
    seen = []
    assert client.send_file(src, progress=lambda b, n: seen.append((b, n))).success
    assert seen == [(1, 512), (2, 1024), (3, 1100)]


def test_cli_send(server, tmp_path, capsys):
    src = tmp_path / 'cli.txt'
    src.write_bytes(b'from the command line')
    code = tftp_client.main([str(src), '--server', '127.0.0.1',
                             '--port', str(server.server_address[1]), '--timeout', '1'])
    assert code == 0
    assert 'transfer complete' in capsys.readouterr().out
    assert wait_for((server.root_dir / 'cli.txt').exists)


def test_cli_failure_exit_code(tmp_path, capsys):
    code = tftp_client.main([str(tmp_path / 'absent.txt'), '--port', '9'])
    assert code == 1
    assert 'transfer failed' in capsys.readouterr().out


def test_sanitize_filename(tmp_path):
    srv = TFTPServer(root_dir=str(tmp_path), log_file=None)
    assert srv.sanitize_filename('../../etc/passwd') == 'passwd'
    assert srv.sanitize_filename('dir\\win.txt') == 'win.txt'
    assert srv.sanitize_filename('.hidden') == 'dot_hidden'
    assert srv.sanitize_filename('CON') == 'unsafe_CON'
    assert srv.sanitize_filename('a b$c.txt') == 'abc.txt'
    assert srv.sanitize_filename('///') == 'unknown_file'


def test_load_config_from_yaml(tmp_path):
    cfg = tmp_path / 'server.yaml'
    cfg.write_text("port: 6969\nretries: 3\nlog_file: null\n")
    config = load_config(str(cfg))
    assert config['port'] == 6969
    assert config['retries'] == 3
    assert config['log_file'] is None
    assert config['timeout'] == 3.0


def test_load_config_rejects_unknown_keys(tmp_path):
    cfg = tmp_path / 'server.yaml'
    cfg.write_text("prot: 69\n")
    with pytest.raises(ValueError):
        load_config(str(cfg))


def test_empty_config_file_keeps_defaults(tmp_path):
    cfg = tmp_path / 'server.yaml'
    cfg.write_text("")
    assert load_config(str(cfg))['port'] == 69


def test_upload_fails_cleanly_when_root_is_gone(server, client, tmp_path):
    src = tmp_path / 'a.txt'
    src.write_bytes(b'payload')
    shutil.rmtree(server.root_dir)

    outcome = client.send_file(src)

    assert not outcome.success
    assert outcome.error_code == ErrorCode.ACCESS_VIOLATION
    assert wait_for(lambda: server.stats['transfers_failed'] == 1)
    assert server.stats['errors'] == 0
    assert wait_for(lambda: not server.reserved_paths)


def test_concurrent_upload_of_same_name_is_refused(server):
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as first, \
            socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as second:
        first.settimeout(2.0)
        second.settimeout(2.0)
        first.sendto(Request.write('same.txt').to_bytes(), server.server_address)
        raw, session_addr = first.recvfrom(1024)
        assert decode(raw) == Ack(0)

        second.sendto(Request.write('same.txt').to_bytes(), server.server_address)
        raw, _ = second.recvfrom(1024)
        reply = decode(raw)
        assert isinstance(reply, ErrorPacket)
        assert reply.code == ErrorCode.FILE_EXISTS

        first.sendto(Data(1, b'first').to_bytes(), session_addr)
        raw, _ = first.recvfrom(1024)
        assert decode(raw) == Ack(1)

    target = server.root_dir / 'same.txt'
    assert wait_for(target.exists)
    assert target.read_bytes() == b'first'


def test_cli_unreadable_file_exit_code(tmp_path, monkeypatch, capsys):
    src = tmp_path / 'locked.txt'
    src.write_bytes(b'secret')

    def deny(*args, **kwargs):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(tftp_client, 'open', deny, raising=False)
    code = tftp_client.main([str(src), '--server', '127.0.0.1', '--port', '9'])
    assert code == 1
    out = capsys.readouterr().out
    assert 'transfer failed' in out
    assert 'cannot open' in out
