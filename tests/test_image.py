"""Tests for the image cache, resize, and provisioning pipeline."""

from __future__ import annotations

from pathlib import Path

import pytest

from cloudvm.errors import DownloadFailure, ResizeFailure
from cloudvm.image import fetch_image, image_virtual_size, provision, resize_image
from cloudvm.util import CmdError, CmdResult


class FakeTools:
    """Stand-in for curl and qemu-img that records every invocation."""

    def __init__(self, *, curl_ok: bool = True, resize_ok: bool = True):
        self.calls: list[list[str]] = []
        self.curl_ok = curl_ok
        self.resize_ok = resize_ok

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        if cmd[0] == 'curl':
            out = Path(cmd[cmd.index('-o') + 1])
            out.write_bytes(b'partial')
            if not self.curl_ok:
                raise CmdError(cmd, CmdResult(22, '', 'HTTP 404'))
            out.write_bytes(b'QFI\xfb')
            return CmdResult(0, '', '')
        if cmd[:2] == ['qemu-img', 'resize']:
            if not self.resize_ok:
                raise CmdError(cmd, CmdResult(1, '', 'cannot shrink'))
            return CmdResult(0, '', '')
        raise AssertionError(cmd)

    def count(self, tool: str) -> int:
        return sum(1 for c in self.calls if c[0] == tool)


def _fake_seed(rec):
    rec.seed_path.write_bytes(b'ISO')
    return rec.seed_path


def test_fetch_image_downloads_to_part_then_renames(monkeypatch, make_record) -> None:
    tools = FakeTools()
    monkeypatch.setattr('cloudvm.image.run_cmd', tools)
    rec = make_record('web1')
    assert fetch_image(rec) is True
    assert rec.image_path.read_bytes() == b'QFI\xfb'
    assert not Path(str(rec.image_path) + '.part').exists()
    curl = tools.calls[0]
    assert curl[curl.index('-o') + 1] == str(rec.image_path) + '.part'
    assert curl[-1] == 'http://example.com/noble.img'


def test_fetch_image_cache_hit(monkeypatch, make_record) -> None:
    tools = FakeTools()
    monkeypatch.setattr('cloudvm.image.run_cmd', tools)
    rec = make_record('web1')
    rec.image_path.write_bytes(b'cached')
    assert fetch_image(rec) is False
    assert tools.calls == []
    assert rec.image_path.read_bytes() == b'cached'


def test_fetch_image_failure_leaves_nothing(monkeypatch, make_record) -> None:
    monkeypatch.setattr('cloudvm.image.run_cmd', FakeTools(curl_ok=False))
    rec = make_record('web1')
    with pytest.raises(DownloadFailure):
        fetch_image(rec)
    assert not rec.image_path.exists()
    assert not Path(str(rec.image_path) + '.part').exists()


def test_resize_image_failure(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr('cloudvm.image.run_cmd', FakeTools(resize_ok=False))
    with pytest.raises(ResizeFailure, match='cannot shrink'):
        resize_image(tmp_path / 'x.img', '1G')


def test_image_virtual_size(monkeypatch, tmp_path) -> None:
    payload = '{"virtual-size": 53687091200, "format": "qcow2"}'
    monkeypatch.setattr(
        'cloudvm.image.run_cmd', lambda cmd, **kw: CmdResult(0, payload, '')
    )
    assert image_virtual_size(tmp_path / 'x.img') == 50 * 1024**3
    monkeypatch.setattr(
        'cloudvm.image.run_cmd', lambda cmd, **kw: CmdResult(0, 'not json', '')
    )
    assert image_virtual_size(tmp_path / 'x.img') is None


def test_provision_twice_downloads_once(monkeypatch, make_record) -> None:
    tools = FakeTools()
    monkeypatch.setattr('cloudvm.image.run_cmd', tools)
    monkeypatch.setattr('cloudvm.image.build_seed', _fake_seed)
    rec = make_record('web1')
    first = provision(rec)
    second = provision(rec)
    assert first.downloaded is True
    assert second.downloaded is False
    assert tools.count('curl') == 1
    assert tools.count('qemu-img') == 2
    assert rec.seed_path.exists()


def test_provision_resize_failure_is_not_fatal(monkeypatch, make_record) -> None:
    monkeypatch.setattr('cloudvm.image.run_cmd', FakeTools(resize_ok=False))
    monkeypatch.setattr('cloudvm.image.build_seed', _fake_seed)
    rec = make_record('web1')
    out = provision(rec)
    assert out.resized is False
    assert out.seed == rec.seed_path
    assert rec.image_path.exists()
