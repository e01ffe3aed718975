"""Serial link to the dcload target: word exchange, checksums and block transfers."""

from __future__ import annotations

import sys
from functools import reduce
from operator import xor

import serial

INITIAL_SPEED = 57600
BLOCK_SIZE = 16384

_SUPPORTED_SPEEDS = frozenset(
    {1500000, 500000, 230400, 115200, 57600, 38400, 19200, 9600}
)
_M2_MAX_OFFSET = 0x0800


class TransferError(OSError):
    """Raised when the serial link fails or cannot be opened."""


class _LzoError(ValueError):
    """Raised when an LZO1X block cannot be decompressed."""


class _Lzo1xReader:
    """Safe LZO1X decompressor working over an in-memory block."""

    def __init__(self, src: bytes) -> None:
        self.src = src
        self.ip = 0
        self.out = bytearray()

    def _next(self) -> int:
        value = self.src[self.ip]
        self.ip += 1
        return value

    def _extend(self, base: int) -> int:
        length = 0
        while self.src[self.ip] == 0:
            length += 255
            self.ip += 1
        return length + base + self._next()

    def _literals(self, count: int) -> None:
        chunk = self.src[self.ip:self.ip + count]
        if len(chunk) < count:
            raise _LzoError("input overrun")
        self.out += chunk
        self.ip += count

    def _copy_match(self, pos: int, count: int) -> None:
        if pos < 0:
            raise _LzoError("lookbehind overrun")
        out = self.out
        for offset in range(count):
            out.append(out[pos + offset])

    def _match(self, t: int) -> bool:
        """Copy one match; return True when the end-of-stream marker is found."""
        op = len(self.out)
        if t >= 64:
            pos = op - 1 - ((t >> 2) & 7) - (self._next() << 3)
            length = (t >> 5) + 1
        elif t >= 32:
            length = t & 31
            if length == 0:
                length = self._extend(31)
            length += 2
            low, high = self._next(), self._next()
            pos = op - 1 - (low >> 2) - (high << 6)
        elif t >= 16:
            pos = op - ((t & 8) << 11)
            length = t & 7
            if length == 0:
                length = self._extend(7)
            length += 2
            low, high = self._next(), self._next()
            pos -= (low >> 2) + (high << 6)
            if pos == op:
                return True
            pos -= 0x4000
        else:
            pos = op - 1 - (t >> 2) - (self._next() << 2)
            length = 2
        self._copy_match(pos, length)
        return False

    def run(self) -> bytes:
        src = self.src
        t = 0
        if src[0] > 17:
            t = self._next() - 17
            if t < 4:
                state = "trailing"
            else:
                self._literals(t)
                state = "first"
        else:
            state = "literal"

        while True:
            if state == "literal":
                t = self._next()
                if t >= 16:
                    state = "match"
                    continue
                if t == 0:
                    t = self._extend(15)
                self._literals(t + 3)
                state = "first"
            elif state == "first":
                t = self._next()
                if t >= 16:
                    state = "match"
                    continue
                pos = len(self.out) - (1 + _M2_MAX_OFFSET) - (t >> 2) - (self._next() << 2)
                self._copy_match(pos, 3)
                state = "done"
            elif state == "match":
                if self._match(t):
                    break
                state = "done"
            elif state == "done":
                t = src[self.ip - 2] & 3
                state = "literal" if t == 0 else "trailing"
            else:
                self._literals(t)
                t = self._next()
                state = "match"

        if self.ip < len(src):
            raise _LzoError("input not consumed")
        return bytes(self.out)


def _lzo1x_decompress(src: bytes) -> bytes:
    try:
        return _Lzo1xReader(src).run()
    except IndexError as exc:
        raise _LzoError("input overrun") from exc


def xor_checksum(data: bytes) -> int:
    """Return the XOR of all bytes in data, as the target computes it."""
    return reduce(xor, data, 0)


def supported_speed(speed: int) -> int:
    """Return speed if the host supports it, otherwise the fallback speed."""
    while speed not in _SUPPORTED_SPEEDS:
        speed = 38400 if speed == INITIAL_SPEED else INITIAL_SPEED
    return speed


class SerialLink:
    """Byte-level conversation with the target over a serial port."""

    def __init__(self, port) -> None:
        self._port = port

    def __enter__(self) -> SerialLink:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read_exact(self, count: int) -> bytes:
        """Read exactly count bytes from the target."""
        buffer = bytearray()
        while len(buffer) < count:
            chunk = self._port.read(count - len(buffer))
            if not chunk:
                raise TransferError("serial read returned no data")
            buffer += chunk
        return bytes(buffer)

    def getc(self) -> int:
        """Read a single byte."""
        return self.read_exact(1)[0]

    def write(self, data: bytes) -> int:
        """Write raw bytes to the target."""
        return self._port.write(bytes(data))

    def send_uint(self, value: int) -> bool:
        """Send a little-endian word; return whether the target echoed it back."""
        value &= 0xFFFFFFFF
        self.write(value.to_bytes(4, "little"))
        return self.recv_uint() == value

    def recv_uint(self) -> int:
        """Receive a little-endian word."""
        return int.from_bytes(self.read_exact(4), "little")

    def send_data(self, data: bytes, verbose: bool = False) -> None:
        """Send data to the target in checksummed blocks.

        Every block is sent uncompressed, which the target always accepts.
        """
        data = bytes(data)
        if verbose:
            print("send_data: ", end="", flush=True)
        for start in range(0, len(data), BLOCK_SIZE):
            block = data[start:start + BLOCK_SIZE]
            if verbose:
                print("U", end="", flush=True)
            self.write(b"U")
            self.send_uint(len(block))
            self.write(block)
            self.write(bytes([xor_checksum(block)]))
            self.read_exact(1)
        if verbose:
            print(flush=True)

    def recv_data(self, total: int, verbose: bool = False) -> bytes:
        """Receive total bytes from the target, decompressing 'C' blocks."""
        received = bytearray()
        if verbose:
            print("recv_data: ", end="", flush=True)
        while len(received) < total:
            kind = self.read_exact(1)
            size = self.recv_uint()
            if kind == b"U":
                if verbose:
                    print("U", end="", flush=True)
                received += self.read_exact(size)
                self.read_exact(1)
                self.write(b"G")
            elif kind == b"C":
                if verbose:
                    print("C", end="", flush=True)
                packed = self.read_exact(size)
                self.read_exact(1)
                try:
                    block = _lzo1x_decompress(packed)
                except _LzoError:
                    self.write(b"B")
                    print("\nrecv_data: decompression failed!", flush=True)
                else:
                    self.write(b"G")
                    received += block
        if verbose:
            print(flush=True)
        return bytes(received)

    def close(self) -> None:
        """Discard pending data and close the port."""
        self._port.reset_input_buffer()
        self._port.reset_output_buffer()
        self._port.close()


def open_serial(device: str, speed: int) -> tuple[SerialLink, int]:
    """Open device at speed (or a supported fallback); return the link and speed used."""
    actual = supported_speed(speed)
    if actual != speed:
        print(f"Unsupported baudrate ({speed}) - falling back to baudrate ({actual})")
    try:
        port = serial.Serial(
            port=device,
            baudrate=actual,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            rtscts=True,
            timeout=None,
        )
    except (serial.SerialException, ValueError) as exc:
        raise TransferError(f"{device}: {exc}") from exc
    return SerialLink(port), actual