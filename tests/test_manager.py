"""Tests for VMManager operations with external tools faked out."""

from __future__ import annotations

import json

import pytest

from cloudvm import supervisor
from cloudvm.config import Settings, VMSpec
from cloudvm.errors import (
    ConfirmationDenied,
    DownloadFailure,
    NotFoundError,
    ValidationError,
    VMRunningError,
)
from cloudvm.image import ProvisionedArtifacts, image_virtual_size
from cloudvm.manager import DELETE_TOKEN, VMManager, spec_from_catalog
from cloudvm.results import OpResult
from cloudvm.util import CmdError, CmdResult


def _spec(name: str = 'web1', **overrides) -> VMSpec:
    kw = dict(
        name=name,
        os_type='ubuntu',
        codename='noble',
        img_url='http://example.com/noble.img',
        hostname=name,
        username='ubuntu',
        password='ubuntu',
        memory=1024,
        cpus=1,
    )
    kw.update(overrides)
    return VMSpec(**kw)


def _fake_provision(rec):
    rec.image_path.write_bytes(b'img')
    rec.seed_path.write_bytes(b'iso')
    return ProvisionedArtifacts(rec.image_path, rec.seed_path, downloaded=True, resized=True)


@pytest.fixture
def mgr(tmp_path, monkeypatch) -> VMManager:
    monkeypatch.setattr('cloudvm.manager.port_in_use', lambda port: False)
    monkeypatch.setattr('cloudvm.manager.provision', _fake_provision)
    return VMManager(Settings(vm_dir=str(tmp_path)))


def test_spec_from_catalog_defaults() -> None:
    spec = spec_from_catalog('Debian 12', name='db1', memory=2048, cpus=2, password='')
    assert spec.os_type == 'debian'
    assert spec.codename == 'bookworm'
    assert spec.hostname == 'db1'
    assert spec.password == 'debian'
    assert spec.disk_size == '20G'
    assert spec.ssh_port == 2222


def test_spec_from_catalog_unknown_field() -> None:
    with pytest.raises(ValidationError):
        spec_from_catalog('Debian 12', color='red')


def test_create_saves_record_and_artifacts(mgr) -> None:
    rec = mgr.create_vm(_spec('web1', port_forwards=['8080:80', '99999:80']))
    assert mgr.list_vms() == ['web1']
    assert rec.image_path.exists()
    assert rec.seed_path.exists()
    # The invalid rule is dropped before saving.
    assert mgr.show_vm('web1').port_forwards == ('8080:80',)


def test_create_rejects_invalid_spec_without_side_effects(mgr, tmp_path) -> None:
    with pytest.raises(ValidationError) as exc:
        mgr.create_vm(_spec('bad name', hostname='okhost', cpus=0, disk_size='20T'))
    assert len(exc.value.problems) == 3
    assert mgr.list_vms() == []
    assert not any(tmp_path.glob('*.img'))


def test_create_duplicate_name(mgr) -> None:
    mgr.create_vm(_spec('web1'))
    with pytest.raises(ValidationError, match='already exists'):
        mgr.create_vm(_spec('web1'))


def test_create_port_in_use(mgr, monkeypatch) -> None:
    monkeypatch.setattr('cloudvm.manager.port_in_use', lambda port: port == 2222)
    with pytest.raises(ValidationError, match='in use'):
        mgr.create_vm(_spec('web1'))
    assert mgr.list_vms() == []


def test_create_failure_cleans_new_artifacts(mgr, monkeypatch, tmp_path) -> None:
    def failing_provision(rec):
        rec.image_path.write_bytes(b'half')
        raise DownloadFailure('network down')

    monkeypatch.setattr('cloudvm.manager.provision', failing_provision)
    with pytest.raises(DownloadFailure):
        mgr.create_vm(_spec('web1'))
    assert mgr.list_vms() == []
    assert not (tmp_path / 'web1.img').exists()
    assert not (tmp_path / 'web1.toml').exists()


def test_create_failure_keeps_preexisting_image(mgr, monkeypatch, tmp_path) -> None:
    (tmp_path / 'web1.img').write_bytes(b'cached')

    def failing_provision(rec):
        raise DownloadFailure('seed tool missing')

    monkeypatch.setattr('cloudvm.manager.provision', failing_provision)
    with pytest.raises(DownloadFailure):
        mgr.create_vm(_spec('web1'))
    assert (tmp_path / 'web1.img').read_bytes() == b'cached'


def test_edit_identity_rebuilds_seed(mgr, monkeypatch) -> None:
    mgr.create_vm(_spec('web1'))
    rebuilt = []
    monkeypatch.setattr('cloudvm.manager.build_seed', lambda rec: rebuilt.append(rec.hostname))
    new = mgr.edit_vm('web1', {'hostname': 'frontend'})
    assert rebuilt == ['frontend']
    assert new.hostname == 'frontend'
    assert mgr.show_vm('web1').hostname == 'frontend'


def test_edit_non_identity_keeps_seed(mgr, monkeypatch) -> None:
    mgr.create_vm(_spec('web1'))
    monkeypatch.setattr(
        'cloudvm.manager.build_seed', lambda rec: pytest.fail('seed rebuilt')
    )
    new = mgr.edit_vm('web1', {'memory': '2048', 'gui_mode': 'yes', 'port_forwards': '8080:80'})
    assert new.memory == 2048
    assert new.gui_mode is True
    assert new.port_forwards == ('8080:80',)


def test_edit_rejects_disk_size_and_bad_values(mgr) -> None:
    mgr.create_vm(_spec('web1'))
    with pytest.raises(ValidationError, match='resize'):
        mgr.edit_vm('web1', {'disk_size': '50G'})
    with pytest.raises(ValidationError):
        mgr.edit_vm('web1', {'ssh_port': 22})
    with pytest.raises(ValidationError):
        mgr.edit_vm('web1', {'port_forwards': 'nonsense'})
    assert mgr.show_vm('web1').ssh_port == 2222


def test_edit_missing_vm(mgr) -> None:
    with pytest.raises(NotFoundError):
        mgr.edit_vm('ghost', {'memory': 2048})


def test_resize_grows_image(mgr, monkeypatch, tmp_path) -> None:
    mgr.create_vm(_spec('db1'))
    sizes = {}

    def fake_run_cmd(cmd, **kwargs):
        if cmd[:2] == ['qemu-img', 'resize']:
            sizes[cmd[2]] = int(cmd[3].rstrip('G')) * 1024**3
            return CmdResult(0, '', '')
        if cmd[:2] == ['qemu-img', 'info']:
            return CmdResult(0, json.dumps({'virtual-size': sizes[cmd[-1]]}), '')
        raise AssertionError(cmd)

    monkeypatch.setattr('cloudvm.image.run_cmd', fake_run_cmd)
    result = mgr.resize_vm('db1', '50G')
    assert result.status == 'resized'
    assert mgr.show_vm('db1').disk_size == '50G'
    assert image_virtual_size(tmp_path / 'db1.img') >= 50 * 1024**3


def test_resize_failure_leaves_record(mgr, monkeypatch) -> None:
    mgr.create_vm(_spec('db1'))
    def refuse(cmd, **kwargs):
        raise CmdError(cmd, CmdResult(1, '', 'shrinking is not supported'))

    monkeypatch.setattr('cloudvm.image.run_cmd', refuse)
    result = mgr.resize_vm('db1', '10G')
    assert result.status == 'failed'
    assert not result.ok
    assert mgr.show_vm('db1').disk_size == '20G'


def test_resize_requires_stopped(mgr, monkeypatch) -> None:
    mgr.create_vm(_spec('db1'))
    monkeypatch.setattr('cloudvm.supervisor.find_pid', lambda rec, settings=None: 4242)
    with pytest.raises(VMRunningError):
        mgr.resize_vm('db1', '50G')
    assert mgr.show_vm('db1').disk_size == '20G'


def test_resize_invalid_size(mgr) -> None:
    mgr.create_vm(_spec('db1'))
    with pytest.raises(ValidationError):
        mgr.resize_vm('db1', '50T')


def test_delete_requires_token(mgr, tmp_path) -> None:
    rec = mgr.create_vm(_spec('web1'))
    with pytest.raises(ConfirmationDenied):
        mgr.delete_vm('web1', 'delete')
    with pytest.raises(ConfirmationDenied):
        mgr.delete_vm('web1', None)
    assert mgr.list_vms() == ['web1']
    assert rec.image_path.exists()


def test_delete_removes_everything(mgr, tmp_path) -> None:
    rec = mgr.create_vm(_spec('web1'))
    mgr.create_vm(_spec('web2', ssh_port=2223))
    supervisor.qemu_log_path(rec).write_text('log\n')
    result = mgr.delete_vm('web1', DELETE_TOKEN)
    assert result.status == 'deleted'
    assert mgr.list_vms() == ['web2']
    assert not rec.image_path.exists()
    assert not rec.seed_path.exists()
    assert not supervisor.qemu_log_path(rec).exists()
    assert (tmp_path / 'web2.img').exists()


def test_delete_running_vm_refused(mgr, monkeypatch) -> None:
    rec = mgr.create_vm(_spec('web1'))
    monkeypatch.setattr('cloudvm.supervisor.find_pid', lambda rec, settings=None: 4242)
    with pytest.raises(VMRunningError):
        mgr.delete_vm('web1', DELETE_TOKEN)
    assert rec.image_path.exists()


def test_start_stop_delegate_to_supervisor(mgr, monkeypatch) -> None:
    mgr.create_vm(_spec('web1'))
    monkeypatch.setattr(
        'cloudvm.supervisor.start',
        lambda rec, settings: OpResult('started', 'ok', level='SUCCESS', pid=7),
    )
    monkeypatch.setattr('cloudvm.supervisor.wait_ready', lambda port, **kw: True)
    result = mgr.start_vm('web1', wait=True)
    assert result.pid == 7
    assert result.ready is True
    assert mgr.stop_vm('web1').status == 'not_running'


def test_create_interrupted_cleans_new_artifacts(mgr, monkeypatch, tmp_path) -> None:
    def interrupted_provision(rec):
        rec.image_path.write_bytes(b'half')
        raise KeyboardInterrupt

    monkeypatch.setattr('cloudvm.manager.provision', interrupted_provision)
    with pytest.raises(KeyboardInterrupt):
        mgr.create_vm(_spec('web1'))
    assert not (tmp_path / 'web1.img').exists()
    assert mgr.list_vms() == []


def test_delete_corrupt_record_uses_derived_paths(mgr, tmp_path) -> None:
    (tmp_path / 'web1.toml').write_text('name = "web1"\npassword = "unterminated\n')
    (tmp_path / 'web1.img').write_bytes(b'img')
    (tmp_path / 'web1-seed.iso').write_bytes(b'iso')
    (tmp_path / 'web1.qemu.log').write_text('log\n')
    with pytest.raises(ConfirmationDenied):
        mgr.delete_vm('web1', 'nope')
    assert (tmp_path / 'web1.img').exists()
    result = mgr.delete_vm('web1', DELETE_TOKEN)
    assert result.status == 'deleted'
    remaining = sorted(p.name for p in tmp_path.iterdir())
    assert not any(n.startswith('web1') for n in remaining)


def test_delete_corrupt_record_still_requires_stopped(mgr, monkeypatch, tmp_path) -> None:
    (tmp_path / 'web1.toml').write_text('not = [valid')
    (tmp_path / 'web1.img').write_bytes(b'img')
    monkeypatch.setattr('cloudvm.supervisor.find_pid', lambda rec, settings=None: 4242)
    with pytest.raises(VMRunningError):
        mgr.delete_vm('web1', DELETE_TOKEN)
    assert (tmp_path / 'web1.img').exists()
    assert (tmp_path / 'web1.toml').exists()
