# qspacing/core/__init__.py
"""Core computational modules for qspacing."""
from . import admm, linalg, rank, solver, spacing, subsample

__all__ = ["admm", "linalg", "rank", "solver", "spacing", "subsample"]
