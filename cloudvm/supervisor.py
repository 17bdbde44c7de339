"""QEMU process supervision: pid files, detached start, readiness, stop.

A VM moves through Stopped -> Starting -> Running -> Stopping -> Stopped.
Only Stopped and Running are observable from outside; they are derived live
from the pid file and the process table, never stored in the VM record.
"""

from __future__ import annotations

import socket
import subprocess
import time
from pathlib import Path

import psutil
from loguru import logger

from .actionlog import report
from .config import Settings, VMRecord
from .errors import NotFoundError
from .net import ForwardingPlan, plan as plan_forwards
from .results import ALREADY_RUNNING, FAILED, NOT_RUNNING, STARTED, STOPPED, OpResult
from .seed import build_seed
from .util import atomic_write_text, shell_join, tail_text

log = logger

RUNNING = 'Running'
STOPPED_STATE = 'Stopped'
STARTING = 'Starting'
STOPPING = 'Stopping'

# How long a fresh QEMU process must survive before start() reports success.
STARTUP_CHECK_S = 1.0
KILL_WAIT_S = 5.0


def pid_path(rec: VMRecord) -> Path:
    return rec.image_path.parent / f'{rec.name}.pid'


def qemu_log_path(rec: VMRecord) -> Path:
    return rec.image_path.parent / f'{rec.name}.qemu.log'


def console_log_path(rec: VMRecord) -> Path:
    return rec.image_path.parent / f'{rec.name}.console.log'


def read_pid(rec: VMRecord) -> int | None:
    try:
        text = pid_path(rec).read_text(encoding='utf-8').strip()
    except FileNotFoundError:
        return None
    return int(text) if text.isdigit() else None


def _owns_vm(
    proc: psutil.Process, rec: VMRecord, settings: Settings | None = None
) -> bool:
    """
    True if ``proc`` is a live QEMU process for ``rec``: it boots the VM's
    disk image or carries the VM's ``-name``.

    The binary counts as QEMU when its name contains ``qemu`` or matches the
    configured ``qemu_binary``.
    """
    settings = settings or Settings()
    try:
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        cmdline = proc.cmdline()
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # Another user's process; a reused pid is not ours.
        return False
    if not cmdline:
        return False
    exe = Path(cmdline[0]).name
    if 'qemu' not in exe and exe != Path(settings.qemu_binary).name:
        return False
    disk_arg = f'file={rec.img_file},'
    if any(arg.startswith(disk_arg) for arg in cmdline):
        return True
    try:
        idx = cmdline.index('-name')
    except ValueError:
        return False
    return idx + 1 < len(cmdline) and cmdline[idx + 1] == rec.name


def find_pid(rec: VMRecord, settings: Settings | None = None) -> int | None:
    """Pid of the VM's QEMU process, clearing a stale pid file if found."""
    pid = read_pid(rec)
    if pid is None:
        if pid_path(rec).exists():
            log.warning('Removing unreadable pid file {}', pid_path(rec))
            pid_path(rec).unlink(missing_ok=True)
        return None
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        proc = None
    if proc is not None and _owns_vm(proc, rec, settings):
        return pid
    log.debug('Removing stale pid file {} (pid {})', pid_path(rec), pid)
    pid_path(rec).unlink(missing_ok=True)
    return None


def state(rec: VMRecord, settings: Settings | None = None) -> str:
    return RUNNING if find_pid(rec, settings) is not None else STOPPED_STATE


def build_command(
    rec: VMRecord, fwd: ForwardingPlan, settings: Settings | None = None
) -> list[str]:
    settings = settings or Settings()
    cmd = [settings.qemu_binary, '-name', rec.name]
    if settings.enable_kvm:
        cmd += ['-enable-kvm', '-cpu', 'host']
    cmd += [
        '-m', str(rec.memory),
        '-smp', str(rec.cpus),
        '-drive', f'file={rec.img_file},format=qcow2,if=virtio',
        '-drive', f'file={rec.seed_file},format=raw,if=virtio',
        '-boot', 'order=c',
        '-netdev', fwd.netdev_arg('net0'),
        '-device', 'virtio-net-pci,netdev=net0',
        '-device', 'virtio-balloon-pci',
        '-object', 'rng-random,filename=/dev/urandom,id=rng0',
        '-device', 'virtio-rng-pci,rng=rng0',
    ]
    if rec.gui_mode:
        cmd += ['-vga', 'virtio', '-display', 'gtk,gl=on']
    else:
        cmd += [
            '-nographic',
            '-serial', f'file:{console_log_path(rec)}',
            '-monitor', 'none',
        ]
    return cmd


def start(rec: VMRecord, settings: Settings | None = None) -> OpResult:
    settings = settings or Settings()
    pid = find_pid(rec, settings)
    if pid is not None:
        msg = report('WARN', "VM '{}' is already running (pid {}).", rec.name, pid)
        return OpResult(ALREADY_RUNNING, msg, level='WARN', pid=pid)
    if not rec.image_path.exists():
        report('ERROR', 'Image not found: {}', rec.image_path)
        raise NotFoundError(f'Image not found: {rec.image_path}')
    if not rec.seed_path.exists():
        report('WARN', 'Seed not found, recreating...')
        build_seed(rec)

    fwd = plan_forwards(rec.ssh_port, rec.port_forwards)
    cmd = build_command(rec, fwd, settings)
    report(
        'INFO',
        'Starting {} (SSH: {}@{} -p{}, Password: {})',
        rec.name,
        rec.username,
        rec.hostname,
        rec.ssh_port,
        rec.password,
    )
    log.debug('{} state -> {}', rec.name, STARTING)
    log.debug('QEMU: {}', shell_join(cmd))
    qlog = qemu_log_path(rec)
    with open(qlog, 'ab') as out:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
        )
    atomic_write_text(pid_path(rec), f'{proc.pid}\n', mode=0o644)
    try:
        code = proc.wait(timeout=STARTUP_CHECK_S)
    except subprocess.TimeoutExpired:
        code = None
    if code is not None:
        pid_path(rec).unlink(missing_ok=True)
        msg = report(
            'ERROR',
            'QEMU exited immediately for {} (code={}):\n{}',
            rec.name,
            code,
            tail_text(qlog),
        )
        return OpResult(FAILED, msg, level='ERROR')
    log.debug('{} state -> {}', rec.name, RUNNING)
    msg = report('SUCCESS', 'Started {} (pid {})', rec.name, proc.pid)
    return OpResult(STARTED, msg, level='SUCCESS', pid=proc.pid)


def wait_ready(
    port: int,
    *,
    attempts: int = 10,
    step_s: float = 1.0,
    cap_s: float = 5.0,
    host: str = '127.0.0.1',
) -> bool:
    """
    Poll the forwarded management port until an SSH banner appears.

    The delay before retry ``n`` is ``min(step_s * n, cap_s)``. Giving up is
    not an error; callers continue either way.
    """
    for attempt in range(1, attempts + 1):
        try:
            with socket.create_connection((host, port), timeout=3) as sock:
                sock.settimeout(3)
                banner = sock.recv(64)
            if banner.startswith(b'SSH-'):
                log.info('SSH is ready on {}:{}', host, port)
                return True
        except OSError:
            pass
        if attempt < attempts:
            delay = min(step_s * attempt, cap_s)
            log.debug(
                'Management port {} not ready (attempt {}/{}); retry in {}s',
                port,
                attempt,
                attempts,
                delay,
            )
            time.sleep(delay)
    log.warning('Gave up waiting for SSH on {}:{} after {} attempts', host, port, attempts)
    return False


def _wait_exit(proc: psutil.Process, timeout: float) -> bool:
    try:
        proc.wait(timeout=timeout)
    except psutil.TimeoutExpired:
        return False
    except psutil.NoSuchProcess:
        pass
    return True


def stop(
    rec: VMRecord, *, grace_s: float = 10.0, settings: Settings | None = None
) -> OpResult:
    """SIGTERM, wait up to ``grace_s`` for exit, then SIGKILL."""
    pid = find_pid(rec, settings)
    if pid is None:
        msg = report('WARN', '{} not running.', rec.name)
        return OpResult(NOT_RUNNING, msg, level='WARN')
    report('INFO', 'Stopping {}', rec.name)
    log.debug('{} state -> {}', rec.name, STOPPING)
    try:
        proc = psutil.Process(pid)
        proc.terminate()
        gone = _wait_exit(proc, grace_s)
        if not gone:
            log.warning('{} ignored SIGTERM for {}s; sending SIGKILL', rec.name, grace_s)
            proc.kill()
            gone = _wait_exit(proc, KILL_WAIT_S)
    except psutil.NoSuchProcess:
        gone = True
    except psutil.AccessDenied as ex:
        msg = report('ERROR', 'Not allowed to signal {} (pid {}): {}', rec.name, pid, ex)
        return OpResult(FAILED, msg, level='ERROR', pid=pid)
    if not gone:
        msg = report('ERROR', 'Could not stop {} (pid {})', rec.name, pid)
        return OpResult(FAILED, msg, level='ERROR', pid=pid)
    pid_path(rec).unlink(missing_ok=True)
    log.debug('{} state -> {}', rec.name, STOPPED_STATE)
    msg = report('SUCCESS', 'Stopped {}', rec.name)
    return OpResult(STOPPED, msg, level='SUCCESS', pid=pid)
