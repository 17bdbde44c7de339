"""Static catalog of supported cloud images."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class OSImage:
    label: str
    family: str
    codename: str
    url: str
    default_hostname: str
    default_username: str
    default_password: str


CATALOG: tuple[OSImage, ...] = (
    OSImage(
        'Ubuntu 22.04', 'ubuntu', 'jammy',
        'https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img',
        'ubuntu22', 'ubuntu', 'ubuntu',
    ),
    OSImage(
        'Ubuntu 24.04', 'ubuntu', 'noble',
        'https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img',
        'ubuntu24', 'ubuntu', 'ubuntu',
    ),
    OSImage(
        'Debian 11', 'debian', 'bullseye',
        'https://cloud.debian.org/images/cloud/bullseye/latest/debian-11-generic-amd64.qcow2',
        'debian11', 'debian', 'debian',
    ),
    OSImage(
        'Debian 12', 'debian', 'bookworm',
        'https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2',
        'debian12', 'debian', 'debian',
    ),
    OSImage(
        'Fedora 40', 'fedora', '40',
        'https://download.fedoraproject.org/pub/fedora/linux/releases/40/Cloud/x86_64/images/Fedora-Cloud-Base-40-1.14.x86_64.qcow2',
        'fedora40', 'fedora', 'fedora',
    ),
    OSImage(
        'CentOS Stream 9', 'centos', 'stream9',
        'https://cloud.centos.org/centos/9-stream/x86_64/images/CentOS-Stream-GenericCloud-9-latest.x86_64.qcow2',
        'centos9', 'centos', 'centos',
    ),
    OSImage(
        'AlmaLinux 9', 'almalinux', '9',
        'https://repo.almalinux.org/almalinux/9/cloud/x86_64/images/AlmaLinux-9-GenericCloud-latest.x86_64.qcow2',
        'almalinux9', 'alma', 'alma',
    ),
    OSImage(
        'Rocky Linux 9', 'rockylinux', '9',
        'https://download.rockylinux.org/pub/rocky/9/images/x86_64/Rocky-9-GenericCloud.latest.x86_64.qcow2',
        'rocky9', 'rocky', 'rocky',
    ),
)


def catalog_labels() -> list[str]:
    return [entry.label for entry in CATALOG]


def find_os_image(key: str) -> OSImage:
    """
    Look up a catalog entry by label (case-insensitive) or 1-based index.

    Example:
        >>> from cloudvm.catalog import find_os_image
        >>> find_os_image('ubuntu 24.04').codename
        'noble'
        >>> find_os_image('1').label
        'Ubuntu 22.04'
    """
    text = str(key).strip()
    if text.isdigit():
        idx = int(text)
        if 1 <= idx <= len(CATALOG):
            return CATALOG[idx - 1]
    for entry in CATALOG:
        if entry.label.lower() == text.lower():
            return entry
    raise KeyError(
        f'Unknown OS image {key!r}. Choose one of: {", ".join(catalog_labels())}'
    )
