import os
import socket
import time
from collections import deque

import pytest

from dctool.gdb import GdbBridge
from dctool.syscalls import (
    SyscallServer,
    stat_fields,
    translate_open_flags,
    unlink_if_ordinary,
)

MINUS_ONE = 0xFFFFFFFF


class FakeLink:
    def __init__(self, words=(), blobs=(), commands=()):
        self.words = deque(words)
        self.blobs = deque(blobs)
        self.commands = deque(commands)
        self.sent = []

    def recv_uint(self):
        return self.words.popleft()

    def recv_data(self, total, verbose=False):
        blob = self.blobs.popleft()
        assert len(blob) == total
        return blob

    def send_uint(self, value):
        self.sent.append(value & 0xFFFFFFFF)
        return True

    def send_data(self, data, verbose=False):
        self.sent.append(bytes(data))

    def getc(self):
        return self.commands.popleft()


def path_arg(path):
    raw = os.fsencode(str(path)) + b"\0"
    return len(raw), raw


def run(command, words=(), blobs=(), isofile=None, gdb=None):
    link = FakeLink(words, blobs)
    with SyscallServer(link, isofile, gdb) as server:
        assert server.handle(command) is True
    return link.sent


def test_translate_open_flags():
    assert translate_open_flags(0) == 0
    assert translate_open_flags(0x0001) == os.O_WRONLY
    assert translate_open_flags(0x0002) == os.O_RDWR
    assert translate_open_flags(0x0008) == os.O_APPEND
    assert translate_open_flags(0x0800) == os.O_EXCL
    assert translate_open_flags(0x0601) == os.O_WRONLY | os.O_CREAT | os.O_TRUNC


def test_stat_fields(tmp_path):
    target = tmp_path / "f.bin"
    target.write_bytes(b"hello")
    result = os.stat(target)
    fields = stat_fields(result)
    assert len(fields) == 13
    assert fields[2] == result.st_mode
    assert fields[7] == 5
    assert stat_fields(None) == (0,) * 13


def test_unlink_if_ordinary(tmp_path):
    regular = tmp_path / "file"
    regular.write_text("x")
    assert unlink_if_ordinary(regular) is True
    assert not regular.exists()
    directory = tmp_path / "dir"
    directory.mkdir()
    assert unlink_if_ordinary(directory) is False
    assert directory.is_dir()
    assert unlink_if_ordinary(tmp_path / "missing") is False


def test_open_write_close(tmp_path):
    target = tmp_path / "out.txt"
    length, raw = path_arg(target)
    sent = run(4, [length, 0x0201, 0o644], [raw])
    fd = sent[0]
    assert fd != MINUS_ONE
    assert run(2, [fd, 5], [b"hello"]) == [5]
    assert run(5, [fd]) == [0]
    assert target.read_bytes() == b"hello"


def test_open_missing_file_fails(tmp_path):
    length, raw = path_arg(tmp_path / "nope")
    assert run(4, [length, 0, 0], [raw]) == [MINUS_ONE]


def test_read_pads_to_count(tmp_path):
    target = tmp_path / "in.txt"
    target.write_bytes(b"abcde")
    fd = os.open(target, os.O_RDONLY)
    try:
        sent = run(3, [fd, 10])
    finally:
        os.close(fd)
    assert sent == [b"abcde" + b"\0" * 5, 5]


def test_lseek(tmp_path):
    target = tmp_path / "seek.txt"
    target.write_bytes(b"0123456789")
    fd = os.open(target, os.O_RDONLY)
    try:
        assert run(11, [fd, 3, os.SEEK_SET]) == [3]
        assert os.read(fd, 2) == b"34"
    finally:
        os.close(fd)


def test_stat_and_fstat(tmp_path):
    target = tmp_path / "s.txt"
    target.write_bytes(b"abc")
    length, raw = path_arg(target)
    sent = run(13, [length], [raw])
    assert len(sent) == 14
    assert sent[7] == 3
    assert sent[-1] == 0
    fd = os.open(target, os.O_RDONLY)
    try:
        fsent = run(1, [fd])
    finally:
        os.close(fd)
    assert fsent[:8] == sent[:8]
    assert fsent[-1] == 0


def test_stat_missing(tmp_path):
    length, raw = path_arg(tmp_path / "gone")
    sent = run(13, [length], [raw])
    assert sent[-1] == MINUS_ONE
    assert sent[:13] == [0] * 13


def test_time():
    before = int(time.time())
    sent = run(12)
    after = int(time.time())
    assert before <= sent[0] <= after


def test_creat_chmod_unlink(tmp_path):
    target = tmp_path / "c.txt"
    length, raw = path_arg(target)
    fd = run(6, [length, 0o600], [raw])[0]
    assert fd != MINUS_ONE
    os.close(fd)
    assert target.exists()
    assert run(10, [length, 0o640], [raw]) == [0]
    assert os.stat(target).st_mode & 0o777 == 0o640
    assert run(8, [length], [raw]) == [0]
    assert not target.exists()
    assert run(8, [length], [raw]) == [MINUS_ONE]


def test_link(tmp_path):
    source = tmp_path / "a"
    source.write_text("data")
    dest = tmp_path / "b"
    len1, raw1 = path_arg(source)
    len2, raw2 = path_arg(dest)
    assert run(7, [len1, len2], [raw1, raw2]) == [0]
    assert dest.read_text() == "data"


def test_chdir(tmp_path, monkeypatch):
    monkeypatch.chdir(os.getcwd())
    length, raw = path_arg(tmp_path)
    assert run(9, [length], [raw]) == [0]
    assert os.path.samefile(os.getcwd(), tmp_path)


def test_utime(tmp_path):
    target = tmp_path / "u.txt"
    target.write_text("x")
    length, raw = path_arg(target)
    assert run(14, [length, 1, 1000000, 2000000], [raw]) == [0]
    result = os.stat(target)
    assert int(result.st_atime) == 1000000
    assert int(result.st_mtime) == 2000000


def read_names(link, server, handle):
    names = []
    while True:
        link.sent.clear()
        link.words.append(handle)
        server.handle(18)
        if link.sent == [0]:
            return names
        assert link.sent[0] == 1
        names.append(link.sent[-1].rstrip(b"\0"))
        assert link.sent[-2] == len(link.sent[-1])


def test_directory_listing(tmp_path):
    (tmp_path / "one").write_text("1")
    (tmp_path / "sub").mkdir()
    length, raw = path_arg(tmp_path)
    link = FakeLink([length], [raw])
    with SyscallServer(link) as server:
        server.handle(16)
        handle = link.sent[0]
        assert handle != 0
        names = read_names(link, server, handle)
        assert sorted(names) == sorted([b".", b"..", b"one", b"sub"])
        link.sent.clear()
        link.words.append(handle)
        server.handle(21)
        assert link.sent == [0]
        assert read_names(link, server, handle) == names
        link.sent.clear()
        link.words.append(handle)
        server.handle(17)
        assert link.sent == [0]


def test_opendir_missing(tmp_path):
    length, raw = path_arg(tmp_path / "absent")
    assert run(16, [length], [raw]) == [0]


def test_read_sectors(tmp_path):
    iso = tmp_path / "image.iso"
    iso.write_bytes(b"A" * 2048 + b"B" * 2048)
    sent = run(19, [151, 1], isofile=iso)
    assert sent == [b"B" * 2048]


def test_gdbpacket_without_bridge():
    assert run(20, [0, 0]) == [MINUS_ONE]


def test_gdbpacket_forwards_data():
    with GdbBridge(port=0) as bridge:
        client = socket.create_connection(("127.0.0.1", bridge.port))
        try:
            client.sendall(b"$g#67")
            sent = run(20, [4, 100], [b"ping"], gdb=bridge)
            assert sent == [5, b"$g#67"]
            assert client.recv(4) == b"ping"
        finally:
            client.close()


def test_serve_stops_on_zero():
    link = FakeLink(commands=[12, 15, 0])
    with SyscallServer(link) as server:
        server.serve()
    assert len(link.sent) == 1
    assert not link.commands


def test_unknown_command_ends():
    link = FakeLink()
    with SyscallServer(link) as server:
        assert server.handle(99) is False
        assert server.handle(0) is False
    assert link.sent == []


def test_missing_isofile_reads_zeros(tmp_path):
    sent = run(19, [150, 1], isofile=tmp_path / "none.iso")
    assert sent == [b"\0" * 2048]