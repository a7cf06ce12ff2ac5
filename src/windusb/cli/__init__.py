"""
WindUSB CLI Module.

Provides command-line interface for WindUSB operations.
"""

from windusb.cli.main import cli, main

__all__ = ["main", "cli"]
