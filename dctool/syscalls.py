"""Host side of the target's remote system calls: file, directory, CD and GDB services."""

from __future__ import annotations

import itertools
import os
import stat
import sys
import time
from dataclasses import dataclass, field

from dctool.gdb import GDB_BUFSIZE

SECTOR_SIZE = 2048
_SECTOR_OFFSET = 150
_O_BINARY = getattr(os, "O_BINARY", 0)

_DT_UNKNOWN = 0
_DT_DIR = 4
_DT_REG = 8
_DT_LNK = 10

_CMD_EXIT = 0
_CMD_UNEXPECTED = 15

# Target open(2) flag bits and the host flags they stand for.
_FLAG_MAP = (
    (0x0001, os.O_WRONLY),
    (0x0002, os.O_RDWR),
    (0x0008, os.O_APPEND),
    (0x0200, os.O_CREAT),
    (0x0400, os.O_TRUNC),
    (0x0800, os.O_EXCL),
)


def _signed(value: int) -> int:
    """Interpret a 32-bit word from the target as a signed integer."""
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _path(raw: bytes) -> bytes:
    """Cut a NUL-terminated path received from the target."""
    return raw.split(b"\0", 1)[0]


def translate_open_flags(flags: int) -> int:
    """Translate the target's open flags into the host's."""
    result = 0
    for target_bit, host_flag in _FLAG_MAP:
        if flags & target_bit:
            result |= host_flag
    return result


def stat_fields(result: os.stat_result | None) -> tuple[int, ...]:
    """Return the thirteen words the target expects for a stat result."""
    if result is None:
        return (0,) * 13
    return (
        result.st_dev,
        result.st_ino,
        result.st_mode,
        result.st_nlink,
        result.st_uid,
        result.st_gid,
        getattr(result, "st_rdev", 0),
        result.st_size,
        getattr(result, "st_blksize", 0),
        getattr(result, "st_blocks", 0),
        int(result.st_atime),
        int(result.st_mtime),
        int(result.st_ctime),
    )


def unlink_if_ordinary(name) -> bool:
    """Remove name if it is a regular file or a symbolic link.

    Return True when it was removed and False when it is missing or not
    ordinary; a failing removal raises OSError.
    """
    try:
        mode = os.lstat(name).st_mode
    except OSError:
        return False
    if stat.S_ISREG(mode) or stat.S_ISLNK(mode):
        os.unlink(name)
        return True
    return False


@dataclass
class _DirEntry:
    name: bytes
    inode: int
    kind: int


@dataclass
class _DirStream:
    entries: list[_DirEntry]
    position: int = field(default=0)

    @classmethod
    def open(cls, path: bytes) -> _DirStream:
        entries = [
            _DirEntry(b".", os.stat(path).st_ino, _DT_DIR),
            _DirEntry(b"..", os.stat(os.path.join(path, b"..")).st_ino, _DT_DIR),
        ]
        with os.scandir(path) as scan:
            for entry in scan:
                if entry.is_symlink():
                    kind = _DT_LNK
                elif entry.is_dir(follow_symlinks=False):
                    kind = _DT_DIR
                elif entry.is_file(follow_symlinks=False):
                    kind = _DT_REG
                else:
                    kind = _DT_UNKNOWN
                entries.append(_DirEntry(os.fsencode(entry.name), entry.inode(), kind))
        return cls(entries)

    def next(self) -> tuple[int, _DirEntry] | None:
        if self.position >= len(self.entries):
            return None
        entry = self.entries[self.position]
        self.position += 1
        return self.position, entry


class SyscallServer:
    """Serves the system calls the target program makes over the link."""

    def __init__(self, link, isofile=None, gdb=None) -> None:
        self._link = link
        self._gdb = gdb
        self._iso = None
        if isofile is not None:
            try:
                self._iso = open(isofile, "rb")
            except OSError as exc:
                print(f"{isofile}: {exc.strerror}", file=sys.stderr)
        self._dirs: dict[int, _DirStream] = {}
        self._dir_ids = itertools.count(1)
        self._handlers = {
            1: self._fstat,
            2: self._write,
            3: self._read,
            4: self._open,
            5: self._close,
            6: self._creat,
            7: self._link_file,
            8: self._unlink,
            9: self._chdir,
            10: self._chmod,
            11: self._lseek,
            12: self._time,
            13: self._stat,
            14: self._utime,
            16: self._opendir,
            17: self._closedir,
            18: self._readdir,
            19: self._read_sectors,
            20: self._gdbpacket,
            21: self._rewinddir,
        }

    def __enter__(self) -> SyscallServer:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def handle(self, command: int) -> bool:
        """Serve one command; return False when the target program has ended."""
        if command == _CMD_EXIT:
            return False
        if command == _CMD_UNEXPECTED:
            print("command 15 should not happen... (but it did)")
            return True
        handler = self._handlers.get(command)
        if handler is None:
            print(f"Unimplemented command ({command}) ")
            print("Assuming program has exited, or something...", flush=True)
            return False
        handler()
        return True

    def serve(self) -> None:
        """Serve commands until the target program ends."""
        while True:
            sys.stdout.flush()
            if not self.handle(self._link.getc()):
                return

    def close(self) -> None:
        """Release the ISO image and any directories left open."""
        if self._iso is not None:
            self._iso.close()
            self._iso = None
        self._dirs.clear()

    def _recv_path(self) -> bytes:
        length = self._link.recv_uint()
        return _path(self._link.recv_data(length, False))

    def _send_stat(self, result: os.stat_result | None, retval: int) -> None:
        for value in stat_fields(result):
            self._link.send_uint(value)
        self._link.send_uint(retval)

    def _fstat(self) -> None:
        fd = _signed(self._link.recv_uint())
        try:
            self._send_stat(os.fstat(fd), 0)
        except OSError:
            self._send_stat(None, -1)

    def _write(self) -> None:
        fd = _signed(self._link.recv_uint())
        count = self._link.recv_uint()
        data = self._link.recv_data(count, False)
        try:
            retval = os.write(fd, data)
        except OSError:
            retval = -1
        self._link.send_uint(retval)

    def _read(self) -> None:
        fd = _signed(self._link.recv_uint())
        count = self._link.recv_uint()
        try:
            data = os.read(fd, count)
            retval = len(data)
        except OSError:
            data, retval = b"", -1
        self._link.send_data(data.ljust(count, b"\0"), False)
        self._link.send_uint(retval)

    def _open(self) -> None:
        path = self._recv_path()
        flags = self._link.recv_uint()
        mode = self._link.recv_uint()
        try:
            retval = os.open(path, translate_open_flags(flags) | _O_BINARY, mode)
        except OSError:
            retval = -1
        self._link.send_uint(retval)

    def _close(self) -> None:
        fd = _signed(self._link.recv_uint())
        self._link.send_uint(self._call(os.close, fd))

    def _creat(self) -> None:
        path = self._recv_path()
        mode = self._link.recv_uint()
        try:
            retval = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        except OSError:
            retval = -1
        self._link.send_uint(retval)

    def _link_file(self) -> None:
        source = self._recv_path()
        target = self._recv_path()
        self._link.send_uint(self._call(os.link, source, target))

    def _unlink(self) -> None:
        self._link.send_uint(self._call(os.unlink, self._recv_path()))

    def _chdir(self) -> None:
        self._link.send_uint(self._call(os.chdir, self._recv_path()))

    def _chmod(self) -> None:
        path = self._recv_path()
        mode = self._link.recv_uint()
        self._link.send_uint(self._call(os.chmod, path, mode))

    def _lseek(self) -> None:
        fd = _signed(self._link.recv_uint())
        offset = _signed(self._link.recv_uint())
        whence = self._link.recv_uint()
        try:
            retval = os.lseek(fd, offset, whence)
        except (OSError, ValueError):
            retval = -1
        self._link.send_uint(retval)

    def _time(self) -> None:
        self._link.send_uint(int(time.time()))

    def _stat(self) -> None:
        path = self._recv_path()
        try:
            self._send_stat(os.stat(path), 0)
        except OSError:
            self._send_stat(None, -1)

    def _utime(self) -> None:
        path = self._recv_path()
        if self._link.recv_uint():
            accessed = self._link.recv_uint()
            modified = self._link.recv_uint()
            times = (accessed, modified)
        else:
            times = None
        self._link.send_uint(self._call(os.utime, path, times))

    def _opendir(self) -> None:
        path = self._recv_path()
        try:
            stream = _DirStream.open(path)
        except OSError:
            self._link.send_uint(0)
            return
        handle = next(self._dir_ids)
        self._dirs[handle] = stream
        self._link.send_uint(handle)

    def _closedir(self) -> None:
        handle = self._link.recv_uint()
        self._link.send_uint(0 if self._dirs.pop(handle, None) is not None else -1)

    def _readdir(self) -> None:
        stream = self._dirs.get(self._link.recv_uint())
        found = stream.next() if stream is not None else None
        if found is None:
            self._link.send_uint(0)
            return
        offset, entry = found
        name = entry.name + b"\0"
        self._link.send_uint(1)
        self._link.send_uint(entry.inode)
        self._link.send_uint(offset)
        self._link.send_uint((19 + len(name) + 7) & ~7)
        self._link.send_uint(entry.kind)
        self._link.send_uint(len(name))
        self._link.send_data(name, False)

    def _rewinddir(self) -> None:
        stream = self._dirs.get(self._link.recv_uint())
        if stream is not None:
            stream.position = 0
        self._link.send_uint(0)

    def _read_sectors(self) -> None:
        start = _signed(self._link.recv_uint()) - _SECTOR_OFFSET
        count = self._link.recv_uint()
        length = count * SECTOR_SIZE
        data = b""
        if self._iso is not None:
            try:
                self._iso.seek(start * SECTOR_SIZE)
                data = self._iso.read(length)
            except (OSError, ValueError):
                data = b""
        self._link.send_data(data.ljust(length, b"\0"), False)

    def _gdbpacket(self) -> None:
        in_size = self._link.recv_uint()
        out_size = self._link.recv_uint()
        outgoing = b""
        if in_size:
            outgoing = bytes(self._link.recv_data(min(in_size, GDB_BUFSIZE), False))
        if self._gdb is None:
            self._link.send_uint(-1)
            return
        try:
            self._gdb.accept()
        except OSError as exc:
            print(f"error accepting gdb server connection: {exc}", file=sys.stderr)
            self._link.send_uint(-1)
            return
        try:
            incoming = self._gdb.exchange(outgoing, out_size)
        except OSError as exc:
            print(f"Got socket error: {exc}", file=sys.stderr)
            return
        self._link.send_uint(len(incoming))
        if incoming:
            self._link.send_data(incoming, False)

    @staticmethod
    def _call(function, *args) -> int:
        try:
            function(*args)
        except OSError:
            return -1
        return 0