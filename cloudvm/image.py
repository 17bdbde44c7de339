"""Base image download cache, disk resize, and full provisioning."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .actionlog import report
from .config import VMRecord
from .errors import DownloadFailure, ResizeFailure
from .seed import build_seed
from .util import CmdError, ensure_dir, run_cmd

log = logger


@dataclass(frozen=True)
class ProvisionedArtifacts:
    image: Path
    seed: Path
    downloaded: bool = False
    resized: bool = False


def fetch_image(rec: VMRecord) -> bool:
    """
    Ensure the VM's disk image exists, downloading it if needed.

    An existing file is trusted as-is. Downloads go to ``<image>.part`` and
    are renamed into place only after curl succeeds.

    Returns:
        bool: True if a download happened.
    """
    img = rec.image_path
    if img.exists():
        log.info('Image exists, skipping download: {}', img)
        return False
    tmp_img = Path(str(img) + '.part')
    ensure_dir(img.parent)
    tmp_img.unlink(missing_ok=True)
    log.info('Downloading base image for {} from {}', rec.name, rec.img_url)
    try:
        run_cmd(
            ['curl', '-L', '--fail', '--progress-bar', '-o', str(tmp_img), rec.img_url],
            check=True,
            capture=False,
        )
        tmp_img.replace(img)
    except (CmdError, OSError) as ex:
        tmp_img.unlink(missing_ok=True)
        raise DownloadFailure(f'Could not download image {rec.img_url}: {ex}') from ex
    log.info('Downloaded base image: {}', img)
    return True


def resize_image(img: Path, size: str) -> None:
    try:
        run_cmd(['qemu-img', 'resize', str(img), size], check=True, capture=True)
    except CmdError as ex:
        raise ResizeFailure(
            f'qemu-img could not resize {img} to {size}: {ex.result.stderr.strip()}'
        ) from ex


def image_virtual_size(img: Path) -> int | None:
    """Virtual size in bytes as reported by ``qemu-img info``."""
    res = run_cmd(
        ['qemu-img', 'info', '--output=json', str(img)], check=False, capture=True
    )
    if res.code != 0:
        return None
    try:
        return int(json.loads(res.stdout)['virtual-size'])
    except (ValueError, KeyError, TypeError):
        return None


def provision(rec: VMRecord) -> ProvisionedArtifacts:
    downloaded = fetch_image(rec)
    resized = True
    try:
        resize_image(rec.image_path, rec.disk_size)
    except ResizeFailure as ex:
        resized = False
        report('WARN', 'Resize may have failed; check image! ({})', ex)
    seed = build_seed(rec)
    report('SUCCESS', "VM '{}' ready!", rec.name)
    return ProvisionedArtifacts(
        image=rec.image_path,
        seed=seed,
        downloaded=downloaded,
        resized=resized,
    )
