"""Host resource probes used for create-time defaults and sanity warnings."""

from __future__ import annotations

import re
from pathlib import Path

import psutil

from .config import VMRecord

_SIZE_UNITS_MB = {'m': 1, 'g': 1024}


def host_mem_total_mb() -> int | None:
    try:
        return int(psutil.virtual_memory().total) // (1024 * 1024)
    except (OSError, RuntimeError):
        return None


def host_cpu_count() -> int | None:
    return psutil.cpu_count(logical=True)


def host_free_disk_gb(path: Path) -> float | None:
    try:
        usage = psutil.disk_usage(str(path))
    except OSError:
        return None
    return usage.free / (1024**3)


def default_memory_mb() -> int:
    """Half of host RAM, or 2048 MB when it cannot be determined."""
    total = host_mem_total_mb()
    if not total:
        return 2048
    return max(256, total // 2)


def default_cpus() -> int:
    return host_cpu_count() or 1


def size_to_mb(size: str) -> int:
    m = re.match(r'^([0-9]+)([GgMm])$', size.strip())
    if m is None:
        raise ValueError(f'Invalid size: {size!r}')
    return int(m.group(1)) * _SIZE_UNITS_MB[m.group(2).lower()]


def vm_resource_warning_lines(rec: VMRecord) -> list[str]:
    warnings: list[str] = []
    mem_total_mb = host_mem_total_mb()
    if mem_total_mb is not None and rec.memory > int(mem_total_mb * 0.8):
        warnings.append(
            'Requested VM RAM is large relative to host total memory: '
            f'requested={rec.memory} MiB, MemTotal={mem_total_mb} MiB. '
            'If the VM fails to start, lower its memory.'
        )

    cpu_count = host_cpu_count()
    if cpu_count is not None and rec.cpus > cpu_count:
        warnings.append(
            'Requested VM CPUs exceed host CPU count: '
            f'requested={rec.cpus}, host_cpus={cpu_count}.'
        )

    free_gb = host_free_disk_gb(rec.image_path.parent)
    if free_gb is not None:
        disk_gb = size_to_mb(rec.disk_size) / 1024
        if disk_gb > free_gb * 0.9:
            warnings.append(
                'Requested VM disk may be too large for free space: '
                f'requested={rec.disk_size}, free≈{free_gb:.1f} GiB '
                f'(dir={rec.image_path.parent}). '
                'Qcow2 images grow lazily, but the guest can fill the host disk.'
            )
    return warnings
