# qspacing/utils/__init__.py
"""Utility functions module."""
from .auto_constant import add_constant

__all__ = ["add_constant"]
