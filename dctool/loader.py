"""Program transfer to and from the target: ELF parsing, upload, download, execute, speed change."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass

from dctool.serialio import SerialLink, open_serial

ELF_MAGIC = b"\x7fELF"
DEFAULT_ADDRESS = 0x8C010000
DOWNLOAD_WRKMEM = 0x8CFF0000

_ELFCLASS32 = 1
_BYTE_ORDERS = {1: "<", 2: ">"}
_EHDR_FORMAT = "HHIIIIIHHHHHH"
_EHDR_SIZE = 52
_SHDR_FORMAT = "10I"
_SHDR_SIZE = 40
_SHT_NOBITS = 8
_SHN_XINDEX = 0xFFFF
_SPEED_CHECK = 0xDEADBEEF


@dataclass(frozen=True)
class Section:
    """One section of an ELF image."""

    name: str
    address: int
    data: bytes
    nobits: bool = False

    @property
    def loadable(self) -> bool:
        """Whether the section has an address and contents to upload."""
        return bool(self.address) and not self.nobits and bool(self.data)


@dataclass(frozen=True)
class ElfImage:
    """A 32-bit ELF executable: its entry point and sections."""

    entry: int
    sections: tuple[Section, ...]

    def loadable_sections(self) -> list[Section]:
        """Return the sections that are sent to the target, in file order."""
        return [section for section in self.sections if section.loadable]


def _unpack(fmt: str, image: bytes, offset: int, what: str) -> tuple[int, ...]:
    try:
        return struct.unpack_from(fmt, image, offset)
    except struct.error as exc:
        raise ValueError(f"Unable to read {what}") from exc


def parse_elf(image: bytes) -> ElfImage | None:
    """Parse a 32-bit ELF image; return None if image is not ELF at all.

    Raises ValueError when the image claims to be ELF but cannot be read.
    """
    image = bytes(image)
    if image[:4] != ELF_MAGIC:
        return None
    if len(image) < _EHDR_SIZE or image[4] != _ELFCLASS32:
        raise ValueError("Unable to read ELF header")
    order = _BYTE_ORDERS.get(image[5])
    if order is None:
        raise ValueError("Unable to read ELF header")

    fields = _unpack(order + _EHDR_FORMAT, image, 16, "ELF header")
    entry, shoff = fields[3], fields[5]
    shentsize, shnum, shstrndx = fields[10], fields[11], fields[12]
    if shoff == 0:
        return ElfImage(entry, ())
    if shentsize < _SHDR_SIZE:
        raise ValueError("Unable to read section header")

    def header(index: int) -> tuple[int, ...]:
        return _unpack(order + _SHDR_FORMAT, image, shoff + index * shentsize, "section header")

    first = header(0)
    if shnum == 0:
        shnum = first[5]
    if shstrndx == _SHN_XINDEX:
        shstrndx = first[6]
    if shstrndx >= shnum:
        raise ValueError("Unable to read section index")
    strtab = header(shstrndx)
    strtab_offset, strtab_size = strtab[4], strtab[5]

    def name_at(offset: int) -> str:
        if offset >= strtab_size:
            raise ValueError("Unable to read section name")
        start = strtab_offset + offset
        end = image.find(b"\0", start, strtab_offset + strtab_size)
        if start >= len(image) or end < 0:
            raise ValueError("Unable to read section name")
        return image[start:end].decode("latin-1")

    sections = []
    for index in range(1, shnum):
        sh_name, sh_type, _flags, sh_addr, sh_offset, sh_size = header(index)[:6]
        name = name_at(sh_name)
        if sh_type == _SHT_NOBITS:
            sections.append(Section(name, sh_addr, b"", nobits=True))
            continue
        data = image[sh_offset:sh_offset + sh_size]
        if len(data) < sh_size:
            raise ValueError(f"Unable to read data of section {name}")
        sections.append(Section(name, sh_addr, data))
    return ElfImage(entry, tuple(sections))


def _send_block(link: SerialLink, address: int, data: bytes) -> None:
    link.write(b"B")
    link.read_exact(1)
    link.send_uint(address)
    link.send_uint(len(data))
    link.send_data(data, True)


def _report(size: int, elapsed: float) -> None:
    rate = size / elapsed if elapsed > 0 else float("inf")
    print(f"effective: {rate:.2f} bytes / sec")
    print(f"{elapsed:.2f} seconds to transfer {size} bytes", flush=True)


def upload(link: SerialLink, filename, address: int) -> int:
    """Upload an ELF or raw binary file; return the address to execute at."""
    with open(filename, "rb") as handle:
        image = handle.read()

    elf = parse_elf(image)
    if elf is not None:
        address = elf.entry
        print(f"File format is ELF, start address is 0x{address:x}")
        start = time.monotonic()
        size = 0
        for section in elf.loadable_sections():
            print(f"Section {section.name}, lma 0x{section.address:x}, size {len(section.data)}")
            size += len(section.data)
            _send_block(link, section.address, section.data)
    else:
        address &= 0xFFFFFFFF
        print(f"File format is raw binary, start address is 0x{address:x}")
        start = time.monotonic()
        size = len(image)
        _send_block(link, address, image)

    _report(size, time.monotonic() - start)
    return address


def download(link: SerialLink, filename, address: int, size: int, quiet: bool = False) -> bytes:
    """Fetch size bytes at address from the target into filename; return them."""
    with open(filename, "wb") as handle:
        link.write(b"G" if quiet else b"F")
        link.read_exact(1)
        link.send_uint(address)
        link.send_uint(size)
        link.send_uint(DOWNLOAD_WRKMEM)
        start = time.monotonic()
        data = link.recv_data(size, True)
        elapsed = time.monotonic() - start
        print(f"Received {size} bytes")
        _report(size, elapsed)
        handle.write(data[:size])
    return data[:size]


def execute(link: SerialLink, address: int, console: bool) -> None:
    """Tell the target to jump to address, with or without the host console."""
    console_flag = 1 if console else 0
    print(f"Sending execute command (0x{address & 0xFFFFFFFF:x}, console={console_flag})...", end="")
    link.write(b"A")
    link.read_exact(1)
    link.send_uint(address)
    link.send_uint(console_flag)
    print("executing")


def speed_request(speed: int, speedhack: bool = False, use_extclk: bool = False) -> int:
    """Return the word sent to the target to ask for speed."""
    if speedhack and speed == 115200:
        return 111607
    if speedhack and speed == 230400:
        return 223214
    if use_extclk:
        return 0
    return speed


def change_speed(
    link: SerialLink,
    device: str,
    speed: int,
    speedhack: bool = False,
    use_extclk: bool = False,
) -> SerialLink:
    """Switch the target and the host to speed; return the reopened link."""
    link.write(b"S")
    link.read_exact(1)
    link.send_uint(speed_request(speed, speedhack, use_extclk))
    print(f"Changing speed to {speed} bps... ", end="", flush=True)
    link.close()

    new_link, _ = open_serial(device, speed)
    new_link.send_uint(_SPEED_CHECK)
    new_link.recv_uint()
    print("done")
    return new_link