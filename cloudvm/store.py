"""Per-VM TOML record store.

Each VM is one ``<name>.toml`` file in the VM directory. Saving replaces a
single file atomically and never rewrites sibling records.
"""

from __future__ import annotations

import fcntl
import tomllib
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Iterator

from loguru import logger

from .config import RECORD_KEYS, VMRecord, is_valid_name, record_problems
from .errors import CorruptRecordError, NotFoundError, ValidationError
from .util import atomic_write_text, ensure_dir

log = logger

SCHEMA_VERSION = 1
RECORD_SUFFIX = '.toml'

_INT_KEYS = ('memory', 'cpus', 'ssh_port')


_TOML_ESCAPES = {'\\': '\\\\', '"': '\\"', '\n': '\\n', '\t': '\\t', '\r': '\\r'}


def _toml_escape(s: str) -> str:
    out = []
    for ch in s:
        if ch in _TOML_ESCAPES:
            out.append(_TOML_ESCAPES[ch])
        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append(f'\\u{ord(ch):04x}')
        else:
            out.append(ch)
    return ''.join(out)


def _emit_toml_kv(lines: list[str], key: str, val: object) -> None:
    if isinstance(val, bool):
        lines.append(f'{key} = {"true" if val else "false"}')
    elif isinstance(val, int):
        lines.append(f'{key} = {val}')
    elif isinstance(val, (list, tuple)):
        parts = [f'"{_toml_escape(str(item))}"' for item in val]
        lines.append(f'{key} = [{", ".join(parts)}]')
    else:
        lines.append(f'{key} = "{_toml_escape(str(val))}"')


def dump_record(rec: VMRecord) -> str:
    lines: list[str] = [f'schema_version = {SCHEMA_VERSION}']
    for key, val in asdict(rec).items():
        _emit_toml_kv(lines, key, val)
    return '\n'.join(lines) + '\n'


def parse_record(text: str, *, source: str = '<string>') -> VMRecord:
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as ex:
        raise CorruptRecordError(f'VM record {source} is not valid TOML: {ex}') from ex
    missing = [k for k in RECORD_KEYS if k not in raw]
    if missing:
        raise CorruptRecordError(
            f'VM record {source} is missing keys: {", ".join(missing)}'
        )
    values: dict[str, object] = {}
    for key in RECORD_KEYS:
        val = raw[key]
        if key in _INT_KEYS:
            if isinstance(val, bool) or not isinstance(val, int):
                raise CorruptRecordError(f'VM record {source}: {key} must be an integer')
        elif key == 'gui_mode':
            if not isinstance(val, bool):
                raise CorruptRecordError(f'VM record {source}: gui_mode must be a boolean')
        elif key == 'port_forwards':
            if not isinstance(val, list) or not all(isinstance(v, str) for v in val):
                raise CorruptRecordError(
                    f'VM record {source}: port_forwards must be a list of strings'
                )
            val = tuple(val)
        elif not isinstance(val, str):
            raise CorruptRecordError(f'VM record {source}: {key} must be a string')
        values[key] = val
    rec = VMRecord(**values)
    problems = record_problems(rec)
    if problems:
        raise CorruptRecordError(f'VM record {source} is invalid: {"; ".join(problems)}')
    return rec


class ConfigStore:
    """Durable VM records, one file per VM, no in-memory caching."""

    def __init__(self, vm_dir: Path | str):
        self.vm_dir = Path(vm_dir)

    def record_path(self, name: str) -> Path:
        return self.vm_dir / f'{name}{RECORD_SUFFIX}'

    def lock_path(self, name: str) -> Path:
        return self.vm_dir / f'{name}.lock'

    def list(self) -> list[str]:
        if not self.vm_dir.is_dir():
            return []
        names = [
            p.stem
            for p in self.vm_dir.glob(f'*{RECORD_SUFFIX}')
            if p.is_file() and is_valid_name(p.stem)
        ]
        return sorted(names)

    def exists(self, name: str) -> bool:
        return is_valid_name(name) and self.record_path(name).is_file()

    def load(self, name: str) -> VMRecord:
        if not is_valid_name(name):
            raise NotFoundError(f"VM config '{name}' not found.")
        fpath = self.record_path(name)
        try:
            text = fpath.read_text(encoding='utf-8')
        except FileNotFoundError:
            raise NotFoundError(f"VM config '{name}' not found.") from None
        except (OSError, UnicodeDecodeError) as ex:
            raise CorruptRecordError(f'VM record {fpath} is unreadable: {ex}') from ex
        rec = parse_record(text, source=str(fpath))
        if rec.name != name:
            raise CorruptRecordError(
                f'VM record {fpath} names a different VM ({rec.name!r})'
            )
        return rec

    @contextmanager
    def locked(self, name: str) -> Iterator[None]:
        """Hold an exclusive advisory lock on one record."""
        ensure_dir(self.vm_dir)
        with open(self.lock_path(name), 'a') as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def save(self, rec: VMRecord) -> Path:
        problems = record_problems(rec)
        if problems:
            raise ValidationError(problems)
        fpath = self.record_path(rec.name)
        with self.locked(rec.name):
            atomic_write_text(fpath, dump_record(rec))
        log.debug('Saved VM record {}', fpath)
        return fpath

    def delete(self, name: str) -> None:
        fpath = self.record_path(name)
        if not is_valid_name(name) or not fpath.exists():
            raise NotFoundError(f"VM config '{name}' not found.")
        with self.locked(name):
            fpath.unlink()
        self.lock_path(name).unlink(missing_ok=True)
        log.debug('Deleted VM record {}', fpath)
