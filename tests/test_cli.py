import io

import pytest

from dctool.cli import (
    Options,
    UsageError,
    dumb_terminal,
    main,
    parse_args,
    usage_text,
)
from dctool.serialio import SerialLink


def test_defaults():
    options = parse_args([])
    assert options == Options()
    assert options.address == 0x8C010000
    assert options.console is True
    assert options.command is None


def test_upload_execute_option():
    options = parse_args(["-x", "prog.elf"])
    assert options.command == "x"
    assert options.filename == "prog.elf"


def test_attached_argument():
    options = parse_args(["-uprog.bin"])
    assert options.command == "u"
    assert options.filename == "prog.bin"


def test_hex_address_and_speed_prefix():
    options = parse_args(["-a", "0x8c020000", "-b", "115200abc"])
    assert options.address == 0x8C020000
    assert options.speed == 115200


def test_octal_size_and_invalid_number():
    options = parse_args(["-s", "010", "-a", "zzz"])
    assert options.size == 8
    assert options.address == 0


def test_flags_cluster():
    options = parse_args(["-qeE"])
    assert (options.quiet, options.speedhack, options.use_extclk) == (True, True, True)


def test_dumbterm_disables_console():
    options = parse_args(["-p"])
    assert options.console is False
    assert options.dumbterm is True
    assert parse_args(["-n"]).dumbterm is False


def test_two_commands_rejected():
    with pytest.raises(UsageError, match="only specify one"):
        parse_args(["-x", "a", "-d", "b"])


def test_illegal_option_is_skipped(capsys):
    options = parse_args(["-z", "-q"])
    assert options.quiet is True
    assert "illegal option -- z" in capsys.readouterr().err


def test_double_dash_stops_parsing():
    options = parse_args(["-q", "--", "-n"])
    assert options.quiet is True
    assert options.console is True


def test_operand_stops_parsing():
    assert parse_args(["file", "-n"]).console is True


def test_missing_argument(capsys):
    options = parse_args(["-q", "-t"])
    assert options.quiet is True
    assert options.device == Options().device
    assert "requires an argument -- t" in capsys.readouterr().err


def test_help_stops_parsing():
    options = parse_args(["-h", "-n"])
    assert options.show_help is True
    assert options.console is True


def test_usage_text_lists_options():
    text = usage_text()
    assert "-x <filename> Upload and execute <filename>" in text
    assert "0x8c010000" in text
    assert "-g            Start a GDB server" in text


def test_dumb_terminal_echoes_bytes():
    out = io.StringIO()
    dumb_terminal(SerialLink(io.BytesIO(b"hello\n")), out)
    assert out.getvalue().endswith("hello\n")
    assert "Dumb terminal" in out.getvalue()


def test_main_without_arguments_prints_usage(capsys):
    assert main([]) == 0
    assert "Upload and execute" in capsys.readouterr().out


def test_main_help(capsys):
    assert main(["-h"]) == 0
    assert "Usage information" in capsys.readouterr().out


def test_main_two_commands(capsys):
    assert main(["-u", "a", "-x", "b"]) == 0
    assert "You can only specify one of -x, -u, and -d" in capsys.readouterr().out


def test_main_missing_upload_file(tmp_path, capsys):
    missing = tmp_path / "absent.bin"
    assert main(["-x", str(missing)]) == 1
    assert str(missing) in capsys.readouterr().err


def test_main_bad_device(tmp_path, capsys):
    program = tmp_path / "prog.bin"
    program.write_bytes(b"\x00\x01")
    assert main(["-u", str(program), "-t", str(tmp_path / "nodevice")]) == 1
    out = capsys.readouterr().out
    assert "Console enabled" in out
    assert "Upload <" not in out