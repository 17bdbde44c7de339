"""CLI commands for VM lifecycle: create, start, stop, info, edit, resize, delete."""

from __future__ import annotations

import scriptconfig as scfg

from ..catalog import CATALOG
from ..config import VMRecord
from ..errors import NotFoundError
from ..host import check_commands, install_hint_lines
from ..manager import spec_from_catalog
from ..supervisor import RUNNING
from ._common import (
    _BaseCommand,
    _confirm_delete,
    _manager,
    _require_vm_name,
    _text,
    log,
)


def _result_code(result) -> int:
    return 0 if result.ok else 1


def render_vm_info(rec: VMRecord, state: str) -> str:
    forwards = ', '.join(rec.port_forwards) or 'None'
    lines = [
        f'VM: {rec.name} ({state})',
        f'OS: {rec.os_type} {rec.codename}, Hostname: {rec.hostname}, Created: {rec.created}',
        f'User: {rec.username}/{rec.password} | Disk: {rec.disk_size} | '
        f'Memory: {rec.memory} | CPUs: {rec.cpus}',
        f'SSH Port: {rec.ssh_port} | GUI mode: {str(rec.gui_mode).lower()}',
        f'Img: {rec.img_file} | Seed: {rec.seed_file}',
        f'Port Forwards: {forwards}',
    ]
    return '\n'.join(lines)


class ListCLI(_BaseCommand):
    """List VMs with their run state."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        mgr = _manager(args)
        names = mgr.list_vms()
        if not names:
            print('No VMs found.')
            print(f'VM directory: {mgr.vm_dir}')
            return 0
        print(f'VMs Detected ({len(names)}):')
        for idx, name in enumerate(names, start=1):
            try:
                state = mgr.running_state(name)
            except Exception as ex:
                log.debug('Could not inspect {}: {}', name, ex)
                state = 'Unreadable'
            print(f'  {idx:2d}) {name} ({state})')
        return 0


class ImagesCLI(_BaseCommand):
    """List the OS images that can be used with `create --os`."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        for idx, entry in enumerate(CATALOG, start=1):
            print(f'  {idx}) {entry.label} [{entry.family} {entry.codename}]')
        return 0


class CreateCLI(_BaseCommand):
    """Create a VM from a cloud image: download, resize, build seed, save."""

    os = scfg.Value(
        'Ubuntu 24.04', type=str, help='Catalog label or number (see `images`).'
    )
    vm = scfg.Value(
        None, type=str, position=1, help='VM name (default: catalog hostname).'
    )
    hostname = scfg.Value(None, type=str, help='Guest hostname (default: VM name).')
    username = scfg.Value(None, type=str, help='Login user (default: catalog user).')
    password = scfg.Value(
        None, type=str, help='Login password (default: catalog password).'
    )
    disk_size = scfg.Value(None, type=str, help='Disk size, e.g. 20G.')
    memory = scfg.Value(None, type=int, help='Memory in MB (default: half host RAM).')
    cpus = scfg.Value(None, type=int, help='vCPUs (default: host CPU count).')
    ssh_port = scfg.Value(None, type=int, help='Host port forwarded to guest SSH (default: 2222).')
    gui = scfg.Value(False, isflag=True, help='Boot with a GTK display.')
    port_forwards = scfg.Value(
        '', type=str, help='Extra forwards, comma separated HOST:GUEST (e.g. 8080:80).'
    )
    start = scfg.Value(False, isflag=True, help='Start the VM after creating it.')
    wait = scfg.Value(False, isflag=True, help='With --start, wait for SSH.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        mgr = _manager(args)
        spec = spec_from_catalog(
            args.os,
            name=_text(args.vm),
            hostname=_text(args.hostname),
            username=_text(args.username),
            password=_text(args.password),
            disk_size=_text(args.disk_size),
            memory=args.memory,
            cpus=args.cpus,
            ssh_port=args.ssh_port,
            gui_mode=bool(args.gui),
            port_forwards=_text(args.port_forwards),
        )
        rec = mgr.create_vm(spec)
        if args.start:
            return _result_code(mgr.start_vm(rec.name, wait=bool(args.wait)))
        return 0


class StartCLI(_BaseCommand):
    """Start a VM's QEMU process in the background."""

    vm = scfg.Value('', type=str, position=1, help='VM name or number.')
    wait = scfg.Value(False, isflag=True, help='Wait for the SSH port to answer.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        mgr = _manager(args)
        result = mgr.start_vm(_require_vm_name(mgr, args.vm), wait=bool(args.wait))
        if result.ready is False:
            log.warning('VM started but SSH did not answer yet; it may still be booting.')
        return _result_code(result)


class StopCLI(_BaseCommand):
    """Stop a VM (SIGTERM, then SIGKILL after the grace period)."""

    vm = scfg.Value('', type=str, position=1, help='VM name or number.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        mgr = _manager(args)
        return _result_code(mgr.stop_vm(_require_vm_name(mgr, args.vm)))


class InfoCLI(_BaseCommand):
    """Show a VM's configuration, including its login password."""

    vm = scfg.Value('', type=str, position=1, help='VM name or number.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        mgr = _manager(args)
        name = _require_vm_name(mgr, args.vm)
        rec = mgr.show_vm(name)
        print(render_vm_info(rec, mgr.running_state(name)))
        return 0


class EditCLI(_BaseCommand):
    """Change VM settings; identity changes rebuild the cloud-init seed."""

    vm = scfg.Value('', type=str, position=1, help='VM name or number.')
    hostname = scfg.Value(None, type=str, help='New hostname.')
    username = scfg.Value(None, type=str, help='New login user.')
    password = scfg.Value(None, type=str, help='New login password.')
    memory = scfg.Value(None, type=int, help='New memory in MB.')
    cpus = scfg.Value(None, type=int, help='New vCPU count.')
    ssh_port = scfg.Value(None, type=int, help='New management port.')
    gui = scfg.Value(None, type=str, help='yes/no to toggle GUI mode.')
    port_forwards = scfg.Value(
        None,
        type=str,
        help='Replacement forwards, comma separated HOST:GUEST ("" clears).',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        mgr = _manager(args)
        name = _require_vm_name(mgr, args.vm)
        changes = {
            key: _text(args[key])
            for key in ('hostname', 'username', 'password')
            if args[key] is not None
        }
        changes.update(
            (key, args[key])
            for key in ('memory', 'cpus', 'ssh_port')
            if args[key] is not None
        )
        if args.gui is not None:
            changes['gui_mode'] = _text(args.gui)
        if args.port_forwards is not None:
            changes['port_forwards'] = _text(args.port_forwards)
        if not changes:
            print('Nothing to change. See `cloudvm edit --help`.')
            return 0
        if mgr.running_state(name) == RUNNING:
            log.warning('{} is running; changes apply on its next start.', name)
        mgr.edit_vm(name, changes)
        return 0


class ResizeCLI(_BaseCommand):
    """Grow a stopped VM's disk image."""

    vm = scfg.Value('', type=str, position=1, help='VM name or number.')
    size = scfg.Value('', type=str, position=2, help='New disk size, e.g. 50G.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        mgr = _manager(args)
        result = mgr.resize_vm(_require_vm_name(mgr, args.vm), str(args.size).strip())
        return _result_code(result)


class DeleteCLI(_BaseCommand):
    """Delete a stopped VM's record, disk image, and seed."""

    vm = scfg.Value('', type=str, position=1, help='VM name or number.')
    confirm = scfg.Value(
        None, type=str, help="Confirmation token; must be exactly 'DELETE'."
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        mgr = _manager(args)
        name = _require_vm_name(mgr, args.vm)
        if not mgr.store.exists(name):
            raise NotFoundError(f"VM config '{name}' not found.")
        token = _confirm_delete(name, args.confirm)
        return _result_code(mgr.delete_vm(name, token))


class HostCLI(_BaseCommand):
    """Check that qemu, qemu-img, cloud-localds, curl and openssl are installed."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        missing, missing_opt = check_commands()
        if missing_opt:
            print(f'Optional commands missing: {", ".join(missing_opt)}')
        if missing:
            print(f'Missing dependencies: {", ".join(missing)}')
            for line in install_hint_lines():
                print(f'  {line}')
            return 1
        print('All required host commands are available.')
        return 0
