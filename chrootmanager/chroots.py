from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import ChrootNotFound, InvalidName
from .lib.chroot import chroot_cmd, copy_dns_info, mount_chroot_binds, umount_chroot_binds

logger = logging.getLogger(__name__)

PROFILE_MARKER = "etc/chrootmanager-profile"
MAKE_CONF = "etc/portage/make.conf"

_MIRRORS_LINE = re.compile(r"^\s*GENTOO_MIRRORS\s*=")


@dataclass(frozen=True)
class ChrootUnit:
    name: str
    path: Path
    profile: Optional[str] = None

    @classmethod
    def load(cls, path: str | Path) -> "ChrootUnit":
        p = Path(path)
        marker = p / PROFILE_MARKER
        profile: Optional[str] = None
        if marker.is_file():
            profile = marker.read_text(encoding="utf-8").strip() or None
        else:
            logger.debug("No profile marker in %s", p)
        return cls(name=p.name, path=p, profile=profile)


def chroot_path(base_dir: str | Path, name: str) -> Path:
    if not name or "/" in name or name.startswith("."):
        raise InvalidName(f"Invalid chroot name: {name!r}")
    return Path(base_dir).expanduser() / name


def list_chroots(base_dir: str | Path) -> List[ChrootUnit]:
    base = Path(base_dir).expanduser()
    if not base.is_dir():
        logger.info("Chroot directory %s does not exist yet", base)
        return []
    return [
        ChrootUnit.load(p)
        for p in sorted(base.iterdir(), key=lambda c: c.name)
        if p.is_dir() and not p.name.startswith(".")
    ]


def find_chroot(base_dir: str | Path, name: str) -> ChrootUnit:
    p = chroot_path(base_dir, name)
    if not p.is_dir():
        raise ChrootNotFound(f"No chroot named '{name}' under {Path(base_dir).expanduser()}")
    return ChrootUnit.load(p)


def write_profile_marker(root: str | Path, profile_path: str) -> Path:
    marker = Path(root) / PROFILE_MARKER
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text(profile_path + "\n", encoding="utf-8")
    return marker


def set_mirrors(root: str | Path, base_url: str) -> Path:
    """Point the chroot's package manager at base_url via GENTOO_MIRRORS in make.conf."""

    conf = Path(root) / MAKE_CONF
    line = f'GENTOO_MIRRORS="{base_url.rstrip("/")}"'
    existing = conf.read_text(encoding="utf-8").splitlines() if conf.exists() else []

    out: List[str] = []
    replaced = False
    for current in existing:
        if _MIRRORS_LINE.match(current):
            # Only one assignment may survive; a later one would win in portage.
            if not replaced:
                out.append(line)
                replaced = True
            continue
        out.append(current)
    if not replaced:
        out.append(line)

    conf.parent.mkdir(parents=True, exist_ok=True)
    conf.write_text("\n".join(out) + "\n", encoding="utf-8")
    logger.info("Set %s in %s", line, conf)
    return conf


def enter_chroot(unit: ChrootUnit, *, shell: str = "/bin/bash", dry_run: bool = False) -> int:
    """Mount, run an interactive shell inside the chroot, always unmount."""

    root = str(unit.path)
    copy_dns_info(root, dry_run=dry_run)
    mount_chroot_binds(root, dry_run=dry_run)
    try:
        res = chroot_cmd(root, [shell, "-l"], interactive=True, check=False, dry_run=dry_run)
    finally:
        umount_chroot_binds(root, dry_run=dry_run)
    logger.info("Left chroot %s (exit %d)", unit.name, res.returncode)
    return res.returncode
