from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Sequence

from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

HOST_RESOLV_CONF = "/etc/resolv.conf"


def chroot_cmd(
    target_root: str,
    argv: Sequence[str],
    *,
    interactive: bool = False,
    check: bool = True,
    dry_run: bool = False,
) -> CmdResult:
    """Run a command inside target root."""

    return run_cmd(["chroot", target_root, *argv], interactive=interactive, check=check, dry_run=dry_run)


def mount_chroot_binds(target_root: str, *, dry_run: bool = False) -> None:
    # proc is mounted fresh; sys and dev (with pts/shm below it) are recursive binds.
    run_cmd(["mount", "-t", "proc", "/proc", f"{target_root}/proc"], dry_run=dry_run)
    for src in ("/sys", "/dev"):
        run_cmd(["mount", "--rbind", src, f"{target_root}{src}"], dry_run=dry_run)
        run_cmd(["mount", "--make-rslave", f"{target_root}{src}"], dry_run=dry_run)


def umount_chroot_binds(target_root: str, *, dry_run: bool = False) -> None:
    for p in [f"{target_root}/dev", f"{target_root}/sys", f"{target_root}/proc"]:
        run_cmd(["umount", "-lR", p], check=False, dry_run=dry_run)


def copy_dns_info(target_root: str, *, source: str = HOST_RESOLV_CONF, dry_run: bool = False) -> bool:
    """Copy the host resolver config so networking works inside the root."""

    src = Path(source)
    if not src.exists():
        logger.warning("No %s on host; chroot keeps its own resolver config", source)
        return False

    dst = Path(target_root) / "etc" / "resolv.conf"
    if dry_run:
        logger.info("Would copy %s -> %s", src, dst)
        return True

    dst.parent.mkdir(parents=True, exist_ok=True)
    # Never follow a symlink out of the root.
    if dst.is_symlink():
        dst.unlink()
    shutil.copyfile(src, dst)
    logger.info("Copied %s -> %s", src, dst)
    return True
