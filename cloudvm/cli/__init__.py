"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import CloudVMModalCLI, main

__all__ = ['CloudVMModalCLI', 'main']
