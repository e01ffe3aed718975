"""Command-line front end: option parsing, dumb terminal and the main program."""

from __future__ import annotations

import contextlib
import os
import sys
from dataclasses import dataclass

from dctool.gdb import GDB_PORT, GdbBridge
from dctool.loader import DEFAULT_ADDRESS, change_speed, download, execute, upload
from dctool.serialio import INITIAL_SPEED, SerialLink, TransferError, open_serial
from dctool.syscalls import SyscallServer

PACKAGE = "dc-tool"
VERSION = "2.0.0"
SERIAL_DEVICE = "/dev/ttyS0"
DEFAULT_SPEED = 57600

_HAVE_CHROOT = hasattr(os, "chroot")
_OPTION_SPEC = "x:u:d:a:s:t:b:c:i:npqheEg" if _HAVE_CHROOT else "x:u:d:a:s:t:b:i:npqheEg"


class UsageError(ValueError):
    """Raised when the command line cannot be used as given."""


@dataclass
class Options:
    """Settings gathered from the command line."""

    command: str | None = None
    filename: str | None = None
    address: int = DEFAULT_ADDRESS
    size: int = 0
    path: str | None = None
    isofile: str | None = None
    device: str = SERIAL_DEVICE
    speed: int = DEFAULT_SPEED
    console: bool = True
    dumbterm: bool = False
    quiet: bool = False
    speedhack: bool = False
    use_extclk: bool = False
    gdb: bool = False
    show_help: bool = False


def _strtoul(text: str) -> int:
    """Parse the leading number of text with C base detection; 0 if there is none."""
    text = text.lstrip()
    negative = False
    if text[:1] in ("+", "-"):
        negative = text[0] == "-"
        text = text[1:]
    if text[:2].lower() == "0x" and text[2:3] and text[2] in "0123456789abcdefABCDEF":
        base, digits = 16, text[2:]
    elif text.startswith("0"):
        base, digits = 8, text
    else:
        base, digits = 10, text
    valid = "0123456789abcdef"[:base]
    prefix = []
    for char in digits:
        if char.lower() not in valid:
            break
        prefix.append(char)
    value = int("".join(prefix), base) if prefix else 0
    return (-value if negative else value) & 0xFFFFFFFF


def _getopt(argv: list[str], spec: str) -> list[tuple[str, str | None]]:
    """Split argv into (option, argument) pairs the way POSIX getopt does."""
    takes_argument = {}
    for letter, follower in zip(spec, spec[1:] + " "):
        if letter != ":":
            takes_argument[letter] = follower == ":"
    found: list[tuple[str, str | None]] = []
    remaining = list(argv)
    while remaining:
        arg = remaining.pop(0)
        if not arg.startswith("-") or arg == "-" or arg == "--":
            break
        cluster = arg[1:]
        while cluster:
            letter, cluster = cluster[0], cluster[1:]
            if letter not in takes_argument:
                if letter == "-":
                    return found
                print(f"{PACKAGE}: illegal option -- {letter}", file=sys.stderr)
                continue
            if not takes_argument[letter]:
                found.append((letter, None))
                continue
            if cluster:
                found.append((letter, cluster))
            elif remaining:
                found.append((letter, remaining.pop(0)))
            else:
                print(f"{PACKAGE}: option requires an argument -- {letter}", file=sys.stderr)
                return found
            break
    return found


def parse_args(argv) -> Options:
    """Build Options from command-line arguments (without the program name)."""
    options = Options()
    for letter, value in _getopt(list(argv), _OPTION_SPEC):
        if letter in ("x", "u", "d"):
            if options.command:
                raise UsageError("You can only specify one of -x, -u, and -d")
            options.command = letter
            options.filename = value
        elif letter == "c":
            options.path = value
        elif letter == "i":
            options.isofile = value
        elif letter == "a":
            options.address = _strtoul(value)
        elif letter == "s":
            options.size = _strtoul(value)
        elif letter == "t":
            options.device = value
        elif letter == "b":
            options.speed = _strtoul(value)
        elif letter == "n":
            options.console = False
        elif letter == "p":
            options.console = False
            options.dumbterm = True
        elif letter == "q":
            options.quiet = True
        elif letter == "h":
            options.show_help = True
            break
        elif letter == "e":
            options.speedhack = True
        elif letter == "E":
            options.use_extclk = True
        elif letter == "g":
            options.gdb = True
    return options


def usage_text() -> str:
    """Return the help text."""
    lines = [
        "",
        f"{PACKAGE} {VERSION}",
        "",
        "-x <filename> Upload and execute <filename>",
        "-u <filename> Upload <filename>",
        "-d <filename> Download to <filename>",
        f"-a <address>  Set address to <address> (default: 0x{DEFAULT_ADDRESS:x})",
        "-s <size>     Set size to <size>",
        f"-t <device>   Use <device> to communicate with dc (default: {SERIAL_DEVICE})",
        f"-b <baudrate> Use <baudrate> (default: {DEFAULT_SPEED})",
        "-e            Try alternate 115200/230400 (must also use -b 115200 or -b 230400)",
        "-E            Use an external clock for the DC's serial port",
        "-n            Do not attach console and fileserver",
        "-p            Use dumb terminal rather than console/fileserver",
        "-q            Do not clear screen before download",
    ]
    if _HAVE_CHROOT:
        lines.append("-c <path>     Chroot to <path> (must be super-user)")
    lines += [
        "-i <isofile>  Enable cdfs redirection using iso image <isofile>",
        "-g            Start a GDB server",
        "-h            Usage information (you're looking at it)",
        "",
    ]
    return "\n".join(lines) + "\n"


def dumb_terminal(link: SerialLink, out=None) -> None:
    """Echo every byte from the target to out until the link fails."""
    out = sys.stdout if out is None else out
    out.write("\nDumb terminal mode isn't implemented, so you get this minimal one.\n\n")
    out.flush()
    while True:
        try:
            byte = link.getc()
        except TransferError:
            return
        out.write(chr(byte))
        out.flush()


def _console(link: SerialLink, options: Options, gdb: GdbBridge | None) -> None:
    with SyscallServer(link, options.isofile, gdb) as server:
        if options.path:
            try:
                os.chroot(options.path)
            except OSError as exc:
                print(f"{options.path}: {exc.strerror}", file=sys.stderr)
        server.serve()


def _announce(options: Options) -> None:
    if options.console:
        print("Console enabled")
    if options.dumbterm:
        print("Dumb terminal enabled")
    if options.quiet:
        print("Quiet download")
    if options.path:
        print("Chroot enabled")
    if options.isofile:
        print("Cdfs redirection enabled")
    if options.speedhack:
        print("Alternate 115200/230400 enabled")
    if options.use_extclk:
        print("External clock usage enabled")


def _dispatch(link: SerialLink, options: Options, gdb: GdbBridge | None) -> tuple[SerialLink, int]:
    device, hack, extclk = options.device, options.speedhack, options.use_extclk
    if options.command == "x":
        if options.isofile:
            link.write(b"H")
            link.read_exact(1)
        print(f"Upload <{options.filename}>")
        address = upload(link, options.filename, options.address)
        print(f"Executing at <0x{address:x}>")
        execute(link, address, options.console)
        if options.console:
            _console(link, options, gdb)
        elif options.dumbterm:
            dumb_terminal(link)
    elif options.command == "u":
        print(f"Upload <{options.filename}> at <0x{options.address:x}>")
        upload(link, options.filename, options.address)
        link = change_speed(link, device, INITIAL_SPEED, hack, extclk)
    elif options.command == "d":
        if not options.size:
            print("You must specify a size (-s <size>) with download (-d <filename>)")
            return link, 0
        print(
            f"Download {options.size} bytes at <0x{options.address:x}> "
            f"to <{options.filename}>"
        )
        download(link, options.filename, options.address, options.size, options.quiet)
        link = change_speed(link, device, INITIAL_SPEED, hack, extclk)
    elif options.dumbterm:
        dumb_terminal(link)
    else:
        print(usage_text(), end="")
    return link, 0


def _run(options: Options, gdb: GdbBridge | None) -> int:
    _announce(options)
    speed = options.speed
    try:
        if speed != INITIAL_SPEED:
            probe, speed = open_serial(options.device, speed)
            probe.close()
        link, _ = open_serial(options.device, INITIAL_SPEED)
    except TransferError as exc:
        print(exc, file=sys.stderr)
        return 1
    try:
        if speed != INITIAL_SPEED:
            link = change_speed(link, options.device, speed, options.speedhack, options.use_extclk)
        link, status = _dispatch(link, options, gdb)
        return status
    except (OSError, ValueError) as exc:
        print(exc, file=sys.stderr)
        return 1
    finally:
        with contextlib.suppress(OSError):
            link.close()


def main(argv=None) -> int:
    """Run the tool; return the process exit status."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print(usage_text(), end="")
        return 0
    try:
        options = parse_args(args)
    except UsageError as exc:
        print(exc)
        return 0
    if options.show_help:
        print(usage_text(), end="")
        return 0

    if options.command in ("x", "u"):
        try:
            os.stat(options.filename)
        except OSError as exc:
            print(f"{options.filename}: {exc.strerror}", file=sys.stderr)
            return 1

    gdb = None
    if options.gdb:
        print(f"Starting a GDB server on port {GDB_PORT}")
        try:
            gdb = GdbBridge(GDB_PORT)
        except OSError as exc:
            print(f"error starting gdb server socket: {exc}", file=sys.stderr)
    try:
        return _run(options, gdb)
    finally:
        if gdb is not None:
            gdb.close()


if __name__ == "__main__":
    sys.exit(main())