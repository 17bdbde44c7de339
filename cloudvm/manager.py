"""VM operations used by the CLI: create, start, stop, edit, resize, delete."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from loguru import logger

from . import supervisor
from .actionlog import report
from .catalog import OSImage, find_os_image
from .config import (
    DEFAULT_DISK_SIZE,
    DEFAULT_SSH_PORT,
    IDENTITY_FIELDS,
    Settings,
    VMRecord,
    VMSpec,
    image_path_for,
    is_valid_size,
    record_problems,
    seed_path_for,
    spec_problems,
)
from .errors import (
    ConfirmationDenied,
    CorruptRecordError,
    NotFoundError,
    ResizeFailure,
    ValidationError,
    VMRunningError,
)
from .image import provision, resize_image
from .net import parse_forward_rules, plan as plan_forwards, port_in_use
from .resource_checks import default_cpus, default_memory_mb, vm_resource_warning_lines
from .results import DELETED, FAILED, RESIZED, STARTED, OpResult
from .seed import build_seed
from .store import ConfigStore

log = logger

DELETE_TOKEN = 'DELETE'

EDITABLE_FIELDS = (
    'hostname',
    'username',
    'password',
    'memory',
    'cpus',
    'ssh_port',
    'gui_mode',
    'port_forwards',
)


def spec_from_catalog(image: OSImage | str, **overrides) -> VMSpec:
    """
    Build a create request from a catalog entry plus operator overrides.

    Empty or None overrides fall back to the catalog and host defaults.
    """
    if isinstance(image, str):
        image = find_os_image(image)
    given = {k: v for k, v in overrides.items() if v not in (None, '')}
    name = given.pop('name', image.default_hostname)
    forwards = given.pop('port_forwards', [])
    spec = VMSpec(
        name=name,
        os_type=image.family,
        codename=image.codename,
        img_url=image.url,
        hostname=given.pop('hostname', name),
        username=given.pop('username', image.default_username),
        password=given.pop('password', image.default_password),
        disk_size=given.pop('disk_size', DEFAULT_DISK_SIZE),
        memory=given.pop('memory', default_memory_mb()),
        cpus=given.pop('cpus', default_cpus()),
        ssh_port=given.pop('ssh_port', DEFAULT_SSH_PORT),
        gui_mode=bool(given.pop('gui_mode', False)),
        port_forwards=parse_forward_rules(forwards),
    )
    if given:
        raise ValidationError(f'unknown VM fields: {", ".join(sorted(given))}')
    return spec


def _coerce_change(key: str, value: object) -> object:
    if key in ('memory', 'cpus', 'ssh_port'):
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return value
    if key == 'gui_mode' and isinstance(value, str):
        return value.strip().lower() in {'1', 'y', 'yes', 'true', 'on'}
    if key == 'port_forwards':
        return tuple(parse_forward_rules(value))
    return value


class VMManager:
    """Entry point for every VM operation; holds no per-VM state."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self.vm_dir = self.settings.vm_path
        self.store = ConfigStore(self.vm_dir)

    def list_vms(self) -> list[str]:
        return self.store.list()

    def show_vm(self, name: str) -> VMRecord:
        return self.store.load(name)

    def running_state(self, name: str) -> str:
        return supervisor.state(self.store.load(name), self.settings)

    def _require_stopped(self, rec: VMRecord, action: str) -> None:
        if supervisor.find_pid(rec, self.settings) is not None:
            report('ERROR', 'Stop {} before trying to {} it.', rec.name, action)
            raise VMRunningError(f"VM '{rec.name}' is running; stop it before {action}.")

    def create_vm(self, spec: VMSpec) -> VMRecord:
        report('INFO', 'Creating a new VM: {}', spec.name)
        problems = spec_problems(spec)
        if problems:
            for p in problems:
                report('ERROR', p)
            raise ValidationError(problems)
        if self.store.exists(spec.name):
            report('ERROR', "VM '{}' already exists.", spec.name)
            raise ValidationError(f"VM '{spec.name}' already exists")
        if port_in_use(int(spec.ssh_port)):
            report('ERROR', 'Port {} is already in use.', spec.ssh_port)
            raise ValidationError(f'management port {spec.ssh_port} is already in use')

        rec = spec.to_record(self.vm_dir)
        fwd = plan_forwards(rec.ssh_port, rec.port_forwards)
        log.debug('Forwarding plan for {}: {}', rec.name, fwd.pairs())
        if fwd.dropped:
            rec = replace(rec, port_forwards=tuple(str(r) for r in fwd.extra))
        for line in vm_resource_warning_lines(rec):
            report('WARN', line)

        existed = {p: p.exists() for p in (rec.image_path, rec.seed_path)}
        try:
            provision(rec)
        except BaseException:
            # All-or-nothing: drop artifacts this call produced.
            for path, was_there in existed.items():
                if not was_there:
                    path.unlink(missing_ok=True)
            report('ERROR', 'Could not provision {}; no config was saved.', rec.name)
            raise
        fpath = self.store.save(rec)
        report('SUCCESS', 'Saved: {}', fpath)
        return rec

    def start_vm(self, name: str, *, wait: bool = False) -> OpResult:
        rec = self.store.load(name)
        result = supervisor.start(rec, self.settings)
        if wait and result.status == STARTED:
            ready = supervisor.wait_ready(
                rec.ssh_port,
                attempts=self.settings.ready_attempts,
                step_s=self.settings.ready_step_s,
                cap_s=self.settings.ready_cap_s,
            )
            result = replace(result, ready=ready)
        return result

    def stop_vm(self, name: str) -> OpResult:
        rec = self.store.load(name)
        return supervisor.stop(
            rec, grace_s=self.settings.stop_grace_s, settings=self.settings
        )

    def edit_vm(self, name: str, changes: dict[str, object]) -> VMRecord:
        rec = self.store.load(name)
        unknown = [k for k in changes if k not in EDITABLE_FIELDS]
        if unknown:
            hint = ' (use resize for disk_size)' if 'disk_size' in unknown else ''
            raise ValidationError(
                f'fields cannot be edited: {", ".join(sorted(unknown))}{hint}'
            )
        updates = {k: _coerce_change(k, v) for k, v in changes.items()}
        new = replace(rec, **updates)
        problems = record_problems(new)
        if not problems and ('port_forwards' in updates or 'ssh_port' in updates):
            fwd = plan_forwards(new.ssh_port, new.port_forwards)
            if fwd.dropped:
                problems.append(f'invalid port forwards: {", ".join(fwd.dropped)}')
        if problems:
            for p in problems:
                report('ERROR', p)
            raise ValidationError(problems)
        if new == rec:
            report('INFO', 'No changes for {}', name)
            return rec
        if any(getattr(new, k) != getattr(rec, k) for k in IDENTITY_FIELDS):
            report('INFO', 'Identity changed; rebuilding seed for {}', name)
            build_seed(new)
        self.store.save(new)
        changed = sorted(k for k in updates if getattr(new, k) != getattr(rec, k))
        report('SUCCESS', 'Updated {}: {}', name, ', '.join(changed))
        return new

    def resize_vm(self, name: str, new_size: str) -> OpResult:
        rec = self.store.load(name)
        if not is_valid_size(new_size):
            report('ERROR', 'Invalid disk size {!r}', new_size)
            raise ValidationError(f'invalid disk size {new_size!r} (expected e.g. 50G)')
        self._require_stopped(rec, 'resizing')
        if not rec.image_path.exists():
            report('ERROR', 'Image not found: {}', rec.image_path)
            raise NotFoundError(f'Image not found: {rec.image_path}')
        try:
            resize_image(rec.image_path, new_size)
        except ResizeFailure as ex:
            msg = report('ERROR', 'Resize of {} failed: {}', name, ex)
            return OpResult(FAILED, msg, level='ERROR')
        self.store.save(replace(rec, disk_size=new_size))
        msg = report('SUCCESS', 'Resized {} disk to {}', name, new_size)
        return OpResult(RESIZED, msg, level='SUCCESS')

    def _record_for_cleanup(self, name: str) -> VMRecord:
        """
        The stored record, or one rebuilt from the name alone when the file is
        unreadable. Artifact paths depend only on the name.
        """
        try:
            return self.store.load(name)
        except CorruptRecordError as ex:
            report(
                'WARN', 'Record for {} is unreadable; using default paths ({})', name, ex
            )
        return VMRecord(
            name=name,
            os_type='',
            codename='',
            img_url='',
            hostname=name,
            username='',
            password='',
            disk_size='',
            memory=0,
            cpus=0,
            ssh_port=0,
            gui_mode=False,
            port_forwards=(),
            img_file=str(image_path_for(self.vm_dir, name)),
            seed_file=str(seed_path_for(self.vm_dir, name)),
            created='',
        )

    def delete_vm(self, name: str, confirmation: str | None) -> OpResult:
        rec = self._record_for_cleanup(name)
        if confirmation != DELETE_TOKEN:
            report('INFO', 'Cancelled.')
            raise ConfirmationDenied(
                f"Deleting '{name}' requires the confirmation token {DELETE_TOKEN!r}"
            )
        self._require_stopped(rec, 'deleting')
        artifacts: list[Path] = [
            rec.image_path,
            rec.seed_path,
            supervisor.pid_path(rec),
            supervisor.qemu_log_path(rec),
            supervisor.console_log_path(rec),
        ]
        for path in artifacts:
            path.unlink(missing_ok=True)
        self.store.delete(name)
        msg = report('SUCCESS', 'Deleted {}', name)
        return OpResult(DELETED, msg, level='SUCCESS')
