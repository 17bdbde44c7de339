from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from cloudvm.config import VMSpec


@pytest.fixture
def make_record(tmp_path: Path):
    def _make(name: str = 'web1', **overrides):
        spec = VMSpec(
            name=name,
            os_type='ubuntu',
            codename='noble',
            img_url='http://example.com/noble.img',
            hostname=name,
            username='ubuntu',
            password='ubuntu',
            memory=1024,
            cpus=2,
        )
        rec = spec.to_record(tmp_path, created='2026-01-01T00:00:00+00:00')
        return replace(rec, **overrides)

    return _make
