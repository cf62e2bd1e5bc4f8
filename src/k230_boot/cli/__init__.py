"""
k230_boot Command-Line Interface
================================

- **k230boot**: Load and run code on a K230 in USB boot mode

The tool is a Click-based CLI application with help for every command.
"""

__all__ = ["k230boot"]
