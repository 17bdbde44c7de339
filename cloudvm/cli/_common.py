from __future__ import annotations

import sys
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..config import Settings, load_settings
from ..errors import ConfirmationDenied
from ..manager import DELETE_TOKEN, VMManager

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help='Path to settings TOML (default: per-user config dir).'
    )
    vm_dir = scfg.Value(
        None, help='VM directory override (default: $CLOUDVM_DIR or ~/vms).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


def _load_settings(args) -> Settings:
    settings = load_settings(Path(args.config) if args.config else None)
    if args.vm_dir:
        settings.vm_dir = str(args.vm_dir)
    return settings


def _text(value) -> str | None:
    """Keep operator text as text even when it looks numeric."""
    return None if value is None else str(value)


def _manager(args) -> VMManager:
    return VMManager(_load_settings(args))


def _require_vm_name(mgr: VMManager, name: str) -> str:
    """Accept a VM name or its 1-based number from `cloudvm list`."""
    name = str(name or '').strip()
    if not name:
        raise RuntimeError('A VM name is required (see `cloudvm list`).')
    if name.isdigit() and not mgr.store.exists(name):
        names = mgr.list_vms()
        idx = int(name)
        if 1 <= idx <= len(names):
            return names[idx - 1]
    return name


def _confirm_delete(name: str, token: str | None) -> str:
    if token:
        return token
    if not sys.stdin.isatty():
        raise ConfirmationDenied(
            f'Deleting requires confirmation; re-run with --confirm {DELETE_TOKEN}.'
        )
    print(f"Delete '{name}'? This is permanent!")
    return input(f"Type '{DELETE_TOKEN}' to confirm: ").strip()


__all__ = [name for name in globals() if not name.startswith('__')]
