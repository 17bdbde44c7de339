"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..actionlog import add_action_log
from ..config import load_settings
from ._common import log
from .vm import (
    CreateCLI,
    DeleteCLI,
    EditCLI,
    HostCLI,
    ImagesCLI,
    InfoCLI,
    ListCLI,
    ResizeCLI,
    StartCLI,
    StopCLI,
)


class CloudVMModalCLI(scfg.ModalCLI):
    """Manage local QEMU VMs built from cloud images."""

    list = ListCLI
    images = ImagesCLI
    create = CreateCLI
    start = StartCLI
    stop = StopCLI
    info = InfoCLI
    edit = EditCLI
    resize = ResizeCLI
    delete = DeleteCLI
    host = HostCLI


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    config_value = _option_value(argv, '--config')
    vm_dir_value = _option_value(argv, '--vm_dir')
    try:
        settings = load_settings(Path(config_value) if config_value else None)
    except Exception as ex:
        print(f'ERROR: could not read settings: {ex}', file=sys.stderr)
        sys.exit(2)
    if vm_dir_value:
        settings.vm_dir = vm_dir_value

    _setup_logging(_count_verbose(argv), settings.verbosity)
    if not any(flag in argv for flag in ('-h', '--help')):
        add_action_log(settings.vm_path)

    try:
        rc = CloudVMModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.debug('Unhandled cloudvm error: {!r}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    fmt = '<level>[{level}]</level> {message}'
    if effective_verbosity >= 2:
        fmt = (
            '<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | '
            '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>'
        )
    logger.add(sys.stderr, level=level, colorize=colorize, format=fmt)
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _option_value(argv: list[str], flag: str) -> str | None:
    for idx, item in enumerate(argv):
        if item == flag:
            return argv[idx + 1] if idx + 1 < len(argv) else None
        if item.startswith(flag + '='):
            return item.split('=', 1)[1]
    return None


def _normalize_argv(argv: list[str]) -> list[str]:
    """Map accepted aliases and hyphenated spellings to command names."""
    aliases = {'ls': 'list', 'show': 'info', 'rm': 'delete'}
    if argv and argv[0] in aliases:
        argv = [aliases[argv[0]], *argv[1:]]
    out = []
    for item in argv:
        if item.startswith('--'):
            flag, sep, value = item.partition('=')
            item = '--' + flag[2:].replace('-', '_') + sep + value
        out.append(item)
    return out


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
