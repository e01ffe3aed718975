# dctool

A host-side companion for the Dreamcast serial loader. It talks to the
console over a serial port. It can:

- upload a 32-bit ELF executable, or any other file as a raw binary, and
  run it,
- download a block of console memory to a file,
- serve file-system calls made by the running program: open, creat,
  read, write, close, lseek, stat, fstat, link, unlink, chdir, chmod,
  utime, time and directory listing,
- redirect CD-ROM sector reads to an ISO image,
- relay GDB remote-protocol packets to a local debugger.

## Installation

```
pip install .
```

This installs the `dc-tool` command. The only runtime dependency is
`pyserial`.

## Usage

```
dc-tool -x program.elf              # upload, execute, then serve console I/O
dc-tool -u data.bin -a 0x8c200000   # upload only, at the given address
dc-tool -d dump.bin -a 0x8c010000 -s 0x10000   # download memory to a file
dc-tool -t /dev/ttyUSB0 -b 115200 -x program.elf
```

Running `dc-tool` with no arguments, or with `-h`, prints the usage text.

Options:

| Option | Meaning |
| --- | --- |
| `-x <file>` | Upload and execute `<file>` |
| `-u <file>` | Upload `<file>` |
| `-d <file>` | Download to `<file>` (needs `-s`) |
| `-a <address>` | Load/download address (default `0x8c010000`); ELF files use their entry point instead |
| `-s <size>` | Download size |
| `-t <device>` | Serial device to use (default `/dev/ttyS0`) |
| `-b <baudrate>` | Baud rate (default `57600`) |
| `-e` | Use the alternate divisor for 115200/230400 |
| `-E` | Use an external clock for the console's serial port |
| `-n` | Do not attach the console and file server |
| `-p` | Echo the console's output as a dumb terminal instead |
| `-q` | Do not clear the screen before a download |
| `-c <path>` | Chroot to `<path>` before serving file calls (super-user only; offered only where the platform supports chroot) |
| `-i <isofile>` | Redirect CD-ROM reads to `<isofile>` |
| `-g` | Start a GDB server on localhost port 2159 |
| `-h` | Show usage |

Only one of `-x`, `-u` and `-d` may be given. Numbers may be written in
decimal, in hex with `0x`, or in octal with a leading `0`.

The tool always starts talking at 57600 bps and then asks the console to
switch to the requested rate. Supported rates are 9600, 19200, 38400,
57600, 115200, 230400, 500000 and 1500000; any other rate falls back to
57600. After `-u` or `-d` the speed is switched back to 57600.

With `-g` the tool listens on `127.0.0.1:2159`. Once the program on the
console sends its first debug packet, connect with
`target remote :2159` from `gdb`. When the tool exits it tells the
debugger the program has ended.

## Library use

The pieces are importable on their own:

- `dctool.serialio.SerialLink` wraps any object with `read`, `write`,
  `reset_input_buffer`, `reset_output_buffer` and `close` methods. It
  implements the loader's framing: echoed little-endian words
  (`send_uint`, `recv_uint`) and checksummed blocks (`send_data`,
  `recv_data`). `open_serial(device, speed)` opens a real port and
  returns the link with the speed actually used; `supported_speed` and
  `xor_checksum` are exposed as well. Link failures raise
  `TransferError`.
- `dctool.loader` has `parse_elf`, `upload`, `download`, `execute`,
  `speed_request` and `change_speed`, with the `ElfImage` and `Section`
  classes returned by `parse_elf`.
- `dctool.syscalls.SyscallServer` answers the console's system-call
  requests over a `SerialLink`; `handle(command)` serves one request and
  `serve()` runs until the program exits. The helpers
  `translate_open_flags`, `stat_fields` and `unlink_if_ordinary` are
  public.
- `dctool.gdb.GdbBridge` relays packets between the console and a
  debugger.
- `dctool.cli` has `main`, `parse_args` (returning `Options`, or raising
  `UsageError`), `usage_text` and `dumb_terminal`.

## Limitations

- Data sent to the console is always sent as uncompressed blocks. Data
  received from the console may be LZO1X-compressed and is decompressed;
  there is no LZO compressor and no separate compression command.
- The dumb terminal (`-p`) only shows what the console prints; it sends
  no keyboard input.
- Only 32-bit ELF files are recognised as executables; anything else is
  uploaded as a raw binary.
- The loader that runs on the console itself is not part of this package.