"""VM record dataclasses, field validation, and tool settings."""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path

import ubelt as ub

from .util import expand

NAME_RE = re.compile(r'^[a-zA-Z0-9_-]+$')
USERNAME_RE = re.compile(r'^[a-z_][a-z0-9_-]*$')
SIZE_RE = re.compile(r'^[0-9]+[GgMm]$')
NUMBER_RE = re.compile(r'^[0-9]+$')

PORT_MIN = 23
PORT_MAX = 65535

DEFAULT_DISK_SIZE = '20G'
DEFAULT_SSH_PORT = 2222

# Fields whose change requires the cloud-init seed to be rebuilt.
IDENTITY_FIELDS = ('hostname', 'username', 'password')


def is_valid_name(value: object) -> bool:
    return isinstance(value, str) and bool(NAME_RE.match(value))


def is_valid_username(value: object) -> bool:
    return isinstance(value, str) and bool(USERNAME_RE.match(value))


def is_valid_size(value: object) -> bool:
    return isinstance(value, str) and bool(SIZE_RE.match(value))


def is_valid_number(value: object) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value > 0
    return isinstance(value, str) and bool(NUMBER_RE.match(value)) and int(value) > 0


def is_valid_port(value: object) -> bool:
    """Port numbers are numeric and within [23, 65535]."""
    if isinstance(value, bool):
        return False
    if isinstance(value, str):
        if not NUMBER_RE.match(value.strip()):
            return False
        value = int(value.strip())
    if not isinstance(value, int):
        return False
    return PORT_MIN <= value <= PORT_MAX


def password_problem(value: object) -> str | None:
    if not isinstance(value, str) or not value:
        return 'password must not be empty'
    if ':' in value or any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in value):
        return (
            "password must not contain ':' or control characters "
            '(cloud-init chpasswd format)'
        )
    return None


def image_path_for(vm_dir: Path, name: str) -> Path:
    return Path(vm_dir) / f'{name}.img'


def seed_path_for(vm_dir: Path, name: str) -> Path:
    return Path(vm_dir) / f'{name}-seed.iso'


def now_stamp() -> str:
    return datetime.now().astimezone().isoformat(timespec='seconds')


@dataclass(frozen=True)
class VMRecord:
    """
    Persisted description of one VM.

    The record is immutable; edits produce a new record with
    :func:`dataclasses.replace` and are saved whole.

    Note:
        ``password`` is kept in cleartext. The cloud-init ``chpasswd`` block
        needs it and ``cloudvm info`` shows it to the operator. This is a
        known, documented weakness, not an oversight.
    """

    name: str
    os_type: str
    codename: str
    img_url: str
    hostname: str
    username: str
    password: str
    disk_size: str
    memory: int
    cpus: int
    ssh_port: int
    gui_mode: bool
    port_forwards: tuple[str, ...]
    img_file: str
    seed_file: str
    created: str

    @property
    def image_path(self) -> Path:
        return Path(self.img_file)

    @property
    def seed_path(self) -> Path:
        return Path(self.seed_file)


RECORD_KEYS = tuple(f.name for f in fields(VMRecord))


def record_problems(rec: VMRecord) -> list[str]:
    problems: list[str] = []
    if not is_valid_name(rec.name):
        problems.append(f'invalid VM name {rec.name!r} (allowed: letters, digits, _ and -)')
    if not is_valid_name(rec.hostname):
        problems.append(f'invalid hostname {rec.hostname!r}')
    if not is_valid_username(rec.username):
        problems.append(f'invalid username {rec.username!r}')
    msg = password_problem(rec.password)
    if msg:
        problems.append(msg)
    if not is_valid_size(rec.disk_size):
        problems.append(f'invalid disk size {rec.disk_size!r} (expected e.g. 20G or 512M)')
    if not is_valid_number(rec.memory):
        problems.append(f'invalid memory {rec.memory!r} (positive MB)')
    if not is_valid_number(rec.cpus):
        problems.append(f'invalid cpus {rec.cpus!r} (positive integer)')
    if not is_valid_port(rec.ssh_port):
        problems.append(f'invalid ssh port {rec.ssh_port!r} (must be {PORT_MIN}-{PORT_MAX})')
    if not isinstance(rec.gui_mode, bool):
        problems.append(f'invalid gui_mode {rec.gui_mode!r}')
    if not rec.img_url:
        problems.append('image URL must not be empty')
    return problems


@dataclass
class VMSpec:
    """Create request: everything the operator chooses for a new VM."""

    name: str
    os_type: str
    codename: str
    img_url: str
    hostname: str
    username: str
    password: str
    disk_size: str = DEFAULT_DISK_SIZE
    memory: int = 2048
    cpus: int = 2
    ssh_port: int = DEFAULT_SSH_PORT
    gui_mode: bool = False
    port_forwards: list[str] = field(default_factory=list)

    def to_record(self, vm_dir: Path, *, created: str | None = None) -> VMRecord:
        return VMRecord(
            name=self.name,
            os_type=self.os_type,
            codename=self.codename,
            img_url=self.img_url,
            hostname=self.hostname or self.name,
            username=self.username,
            password=self.password,
            disk_size=self.disk_size,
            memory=int(self.memory),
            cpus=int(self.cpus),
            ssh_port=int(self.ssh_port),
            gui_mode=bool(self.gui_mode),
            port_forwards=tuple(str(r).strip() for r in self.port_forwards if str(r).strip()),
            img_file=str(image_path_for(vm_dir, self.name)),
            seed_file=str(seed_path_for(vm_dir, self.name)),
            created=created or now_stamp(),
        )


def spec_problems(spec: VMSpec) -> list[str]:
    """Validate raw spec values before they are coerced into a record."""
    problems: list[str] = []
    if not is_valid_name(spec.name):
        problems.append(f'invalid VM name {spec.name!r} (allowed: letters, digits, _ and -)')
    if spec.hostname and not is_valid_name(spec.hostname):
        problems.append(f'invalid hostname {spec.hostname!r}')
    if not is_valid_username(spec.username):
        problems.append(f'invalid username {spec.username!r}')
    msg = password_problem(spec.password)
    if msg:
        problems.append(msg)
    if not is_valid_size(spec.disk_size):
        problems.append(f'invalid disk size {spec.disk_size!r} (expected e.g. 20G or 512M)')
    if not is_valid_number(spec.memory):
        problems.append(f'invalid memory {spec.memory!r} (positive MB)')
    if not is_valid_number(spec.cpus):
        problems.append(f'invalid cpus {spec.cpus!r} (positive integer)')
    if not is_valid_port(spec.ssh_port):
        problems.append(f'invalid ssh port {spec.ssh_port!r} (must be {PORT_MIN}-{PORT_MAX})')
    if not spec.img_url:
        problems.append('image URL must not be empty')
    return problems


@dataclass
class Settings:
    vm_dir: str = '~/vms'
    qemu_binary: str = 'qemu-system-x86_64'
    enable_kvm: bool = True
    stop_grace_s: float = 10.0
    ready_attempts: int = 10
    ready_step_s: float = 1.0
    ready_cap_s: float = 5.0
    verbosity: int = 1

    @property
    def vm_path(self) -> Path:
        return Path(expand(self.vm_dir))


def settings_path() -> Path:
    return Path(ub.Path.appdir('cloudvm', type='config')) / 'config.toml'


def load_settings(path: Path | None = None) -> Settings:
    fpath = path or settings_path()
    settings = Settings()
    if fpath.exists():
        raw = tomllib.loads(fpath.read_text(encoding='utf-8'))
        for f in fields(Settings):
            if f.name in raw:
                setattr(settings, f.name, type(getattr(settings, f.name))(raw[f.name]))
    env_dir = os.environ.get('CLOUDVM_DIR', '').strip()
    if env_dir:
        settings.vm_dir = env_dir
    return settings
