"""
MCU Link Command-Line Interface
===============================

This package provides the `mculink` command-line tool: port discovery,
bootloader sync and register reads, and code execution through the raw
REPL.

The tool is a Click-based CLI application with built-in help and
uniform error reporting (see errors.py).
"""

__all__ = ["mculink"]
