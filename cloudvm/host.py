"""Host dependency checks for the QEMU / cloud-init toolchain."""

from __future__ import annotations

from pathlib import Path

from .util import which

REQUIRED_CMDS = [
    'qemu-system-x86_64',
    'qemu-img',
    'cloud-localds',
    'curl',
    'openssl',
]
OPTIONAL_CMDS = ['ssh']

INSTALL_HINTS = {
    'debian': 'sudo apt install qemu-system-x86 qemu-utils cloud-image-utils curl openssl',
    'fedora': 'sudo dnf install qemu-img qemu-system-x86 cloud-utils curl openssl',
    'alpine': 'sudo apk add qemu-img qemu-system-x86_64 cloud-utils-localds curl openssl',
}


def check_commands() -> tuple[list[str], list[str]]:
    missing = [c for c in REQUIRED_CMDS if which(c) is None]
    missing_opt = [c for c in OPTIONAL_CMDS if which(c) is None]
    return missing, missing_opt


def host_family() -> str:
    try:
        data = Path('/etc/os-release').read_text(encoding='utf-8')
    except Exception:
        return ''
    if any(k in data for k in ('ID=debian', 'ID=ubuntu', 'ID_LIKE=debian')):
        return 'debian'
    if any(k in data for k in ('ID=fedora', 'ID_LIKE="rhel', 'ID_LIKE=fedora', 'ID=centos')):
        return 'fedora'
    if 'ID=alpine' in data:
        return 'alpine'
    return ''


def install_hint_lines() -> list[str]:
    fam = host_family()
    if fam:
        return [INSTALL_HINTS[fam]]
    return [f'{k}: {v}' for k, v in INSTALL_HINTS.items()]
