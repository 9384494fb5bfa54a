"""
blobserve CLI module.

This module provides the command-line interface for blobserve.
"""

from .main import cli, main

__all__ = ["cli", "main"]
