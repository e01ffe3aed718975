"""Host-side tool for the Dreamcast serial loader: serial link, loader, system-call server, GDB bridge and CLI."""

__version__ = "2.0.0"
__all__ = ["cli", "gdb", "loader", "serialio", "syscalls"]