"""Leveled operator status messages and the append-only action log."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

log = logger

ACTION_LOG_NAME = 'manager.log'

# Operator-facing level names mapped onto loguru levels.
LEVELS = {
    'INFO': 'INFO',
    'WARN': 'WARNING',
    'WARNING': 'WARNING',
    'ERROR': 'ERROR',
    'SUCCESS': 'SUCCESS',
}

ACTION_FORMAT = '[{time:YYYY-MM-DD HH:mm:ss}] [{extra[kind]}] {message}'


def report(level: str, message: str, *args) -> str:
    """
    Emit a status message that is also appended to the action log.

    Args:
        level: one of INFO, WARN, ERROR, SUCCESS.
        message: loguru-style format string.

    Returns:
        str: the formatted message.
    """
    kind = level.upper()
    if kind not in LEVELS:
        raise KeyError(f'Unknown report level: {level}')
    text = message.format(*args) if args else message
    log.bind(action=True, kind='WARN' if kind == 'WARNING' else kind).opt(
        depth=1
    ).log(LEVELS[kind], '{}', text)
    return text


def _is_action(record) -> bool:
    return bool(record['extra'].get('action'))


def add_action_log(vm_dir: Path) -> int:
    """Attach the append-only ``manager.log`` sink and return its handler id."""
    vm_dir = Path(vm_dir)
    vm_dir.mkdir(parents=True, exist_ok=True)
    return logger.add(
        vm_dir / ACTION_LOG_NAME,
        level='INFO',
        format=ACTION_FORMAT,
        filter=_is_action,
        mode='a',
        encoding='utf-8',
        colorize=False,
    )
