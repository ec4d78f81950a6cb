"""
CLI tools for HMR calling.

Provides command-line interfaces for:
- run_hmr.py: Call hypomethylated regions from a CpG BED file
"""

from .run_hmr import build_parser, main

__all__ = ["build_parser", "main"]
