"""Cloud-init NoCloud seed generation (user-data, meta-data, seed ISO)."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from loguru import logger

from .config import VMRecord
from .errors import SeedBuildError
from .util import CmdError, ensure_dir, run_cmd

log = logger


def hash_password(secret: str) -> str:
    """SHA-512 crypt hash suitable for the cloud-init ``passwd`` field."""
    try:
        res = run_cmd(
            ['openssl', 'passwd', '-6', '-stdin'],
            check=True,
            capture=True,
            input_text=secret + '\n',
        )
    except CmdError as ex:
        raise SeedBuildError(f'Could not hash VM password: {ex}') from ex
    hashed = res.stdout.strip()
    if not hashed.startswith('$6$'):
        raise SeedBuildError(f'Unexpected openssl passwd output: {hashed!r}')
    return hashed


def render_user_data(rec: VMRecord, password_hash: str) -> str:
    return f"""#cloud-config
hostname: {rec.hostname}
ssh_pwauth: true
disable_root: false
users:
  - name: {rec.username}
    sudo: ALL=(ALL) NOPASSWD:ALL
    shell: /bin/bash
    lock_passwd: false
    passwd: "{password_hash}"
chpasswd:
  list: |
    root:{rec.password}
    {rec.username}:{rec.password}
  expire: false
"""


def render_meta_data(rec: VMRecord) -> str:
    return f"""instance-id: iid-{rec.name}
local-hostname: {rec.hostname}
"""


def build_seed(rec: VMRecord) -> Path:
    """
    Write a fresh seed ISO for ``rec``; the previous seed is replaced only
    once the new one is complete.
    """
    seed = rec.seed_path
    tmp_seed = Path(str(seed) + '.part')
    ensure_dir(seed.parent)
    log.debug('Building cloud-init seed for {}', rec.name)
    password_hash = hash_password(rec.password)
    try:
        with tempfile.TemporaryDirectory(prefix=f'cloudvm-{rec.name}-') as td:
            user_data = Path(td) / 'user-data'
            meta_data = Path(td) / 'meta-data'
            user_data.write_text(render_user_data(rec, password_hash), encoding='utf-8')
            meta_data.write_text(render_meta_data(rec), encoding='utf-8')
            tmp_seed.unlink(missing_ok=True)
            run_cmd(
                ['cloud-localds', str(tmp_seed), str(user_data), str(meta_data)],
                check=True,
                capture=True,
            )
        os.replace(tmp_seed, seed)
    except (CmdError, OSError) as ex:
        tmp_seed.unlink(missing_ok=True)
        raise SeedBuildError(f'Could not build seed image {seed}: {ex}') from ex
    log.info('Seed image ready: {}', seed)
    return seed
