from __future__ import annotations

import logging

import pytest

from chrootmanager.errors import CommandError
from chrootmanager.lib.chroot import chroot_cmd
from chrootmanager.lib.command import run_cmd


def test_dry_run_logs_without_executing(tmp_path, caplog):
    caplog.set_level(logging.INFO)
    marker = tmp_path / "created"

    res = run_cmd(["touch", str(marker)], dry_run=True)

    assert res.returncode == 0
    assert not marker.exists()
    assert f"CMD touch {marker}" in caplog.text


def test_captures_output():
    res = run_cmd(["sh", "-c", "echo out; echo err >&2"])

    assert res.returncode == 0
    assert res.stdout == "out\n"
    assert res.stderr == "err\n"


def test_extra_env_is_merged():
    res = run_cmd(["sh", "-c", 'echo "$CHROOTMANAGER_TEST"'], env={"CHROOTMANAGER_TEST": "42"})
    assert res.stdout.strip() == "42"


def test_failure_raises_with_returncode():
    with pytest.raises(CommandError) as exc:
        run_cmd(["sh", "-c", "echo nope >&2; exit 3"])

    assert exc.value.returncode == 3
    assert "nope" in str(exc.value)


def test_failure_tolerated_without_check():
    assert run_cmd(["sh", "-c", "exit 5"], check=False).returncode == 5


def test_chroot_cmd_prefixes_target(caplog):
    caplog.set_level(logging.INFO)

    res = chroot_cmd("/srv/chroots/dev", ["emerge", "--sync"], dry_run=True)

    assert res.argv == ["chroot", "/srv/chroots/dev", "emerge", "--sync"]
