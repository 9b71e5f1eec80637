"""Kata static builder - cached builds of Kata Containers release components.

This package reuses previously published component tarballs when their
version fingerprint matches, and falls back to the component's static
builder otherwise.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
