from __future__ import annotations

import os

import pytest

from cloudvm.util import CmdError, atomic_write_text, shell_join, tail_text
from cloudvm.util import run_cmd as _run_cmd


def test_shell_join_quotes() -> None:
    cmd = ['echo', 'a b', "c'd"]
    s = shell_join(cmd)
    assert "'a b'" in s
    assert s.startswith('echo ')


def test_run_cmd_success_and_failure() -> None:
    ok = _run_cmd(['bash', '-c', 'printf ok'], check=True, capture=True)
    assert ok.code == 0
    assert ok.stdout == 'ok'
    bad = _run_cmd(['bash', '-c', 'exit 7'], check=False, capture=True)
    assert bad.code == 7
    with pytest.raises(CmdError):
        _run_cmd(['bash', '-c', 'exit 9'], check=True, capture=True)


def test_run_cmd_passes_stdin() -> None:
    res = _run_cmd(['cat'], check=True, capture=True, input_text='hello\n')
    assert res.stdout == 'hello\n'


def test_run_cmd_missing_binary() -> None:
    res = _run_cmd(['cloudvm-no-such-binary'], check=False, capture=True)
    assert res.code == 127
    with pytest.raises(CmdError):
        _run_cmd(['cloudvm-no-such-binary'], check=True, capture=True)


def test_atomic_write_text_replaces_whole_file(tmp_path) -> None:
    target = tmp_path / 'sub' / 'x.toml'
    atomic_write_text(target, 'first\n')
    atomic_write_text(target, 'second\n')
    assert target.read_text() == 'second\n'
    assert (os.stat(target).st_mode & 0o777) == 0o600
    assert sorted(p.name for p in target.parent.iterdir()) == ['x.toml']


def test_tail_text(tmp_path) -> None:
    fpath = tmp_path / 'log.txt'
    fpath.write_text('\n'.join(str(i) for i in range(30)) + '\n')
    assert tail_text(fpath, max_lines=3) == '27\n28\n29'
    assert tail_text(tmp_path / 'missing.txt') == ''
