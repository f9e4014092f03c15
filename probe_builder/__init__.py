"""Probe Builder - precompiled kernel module artifacts for a kernel matrix.

This package fetches kernel packages per distribution family, normalizes them
into build targets, and compiles the probe against each one inside a
compiler-matched builder container.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
