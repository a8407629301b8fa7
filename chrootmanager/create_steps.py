from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import yaml

from .chroots import chroot_path, set_mirrors, write_profile_marker
from .config import ManagerConfig
from .errors import ChrootExists, StateError
from .lib.chroot import copy_dns_info
from .lib.command import run_cmd
from .lib.http import make_client
from .lib.stage3 import ProgressCallback, fetch_stage3, stage3_pattern
from .models import Selection
from .state_store import ensure_defaults, is_step_completed, load_document, mark_step_completed, save_document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreateCtx:
    cfg: ManagerConfig
    name: str
    selection: Selection
    client: httpx.Client
    dry_run: bool = False
    force_download: bool = False
    progress: Optional[ProgressCallback] = None

    @property
    def root(self) -> Path:
        return chroot_path(self.cfg.chroot_base_dir, self.name)

    @property
    def state_path(self) -> Path:
        return Path(self.cfg.state_dir) / f"{self.root.name}.json"


def step_10_fetch_stage3(*, ctx: CreateCtx, state: Dict[str, Any]) -> None:
    if ctx.dry_run:
        planned = Path(ctx.cfg.stage3_cache_dir) / f"{stage3_pattern(ctx.selection)}.tar.xz"
        logger.info("Would fetch %s from %s", ctx.selection.stage3_reference, ctx.selection.mirror_base_url)
        state["chroot"]["stage3_path"] = str(planned)
        return

    path = fetch_stage3(
        ctx.client,
        ctx.selection,
        ctx.cfg.stage3_cache_dir,
        timeout=ctx.cfg.timeout,
        force_download=ctx.force_download,
        progress=ctx.progress,
    )
    state["chroot"]["stage3_path"] = str(path)


def step_20_prepare_root(*, ctx: CreateCtx, state: Dict[str, Any]) -> None:
    if ctx.dry_run:
        logger.info("Would create %s", ctx.root)
        return
    ctx.root.mkdir(parents=True, exist_ok=True)


def step_30_extract_stage3(*, ctx: CreateCtx, state: Dict[str, Any]) -> None:
    stage3 = state["chroot"].get("stage3_path")
    if not stage3:
        raise StateError("chroot.stage3_path missing; run the fetch step first")
    run_cmd(
        ["tar", "xpf", stage3, "--xattrs-include=*.*", "--numeric-owner", "-C", str(ctx.root)],
        dry_run=ctx.dry_run,
    )


def step_40_copy_dns(*, ctx: CreateCtx, state: Dict[str, Any]) -> None:
    copy_dns_info(str(ctx.root), dry_run=ctx.dry_run)


def step_50_write_profile_info(*, ctx: CreateCtx, state: Dict[str, Any]) -> None:
    if ctx.dry_run:
        logger.info("Would record profile %s in %s", ctx.selection.profile_path, ctx.root)
        return
    write_profile_marker(ctx.root, ctx.selection.profile_path)


def step_60_configure_mirrors(*, ctx: CreateCtx, state: Dict[str, Any]) -> None:
    if ctx.dry_run:
        logger.info("Would set GENTOO_MIRRORS=%s in %s", ctx.selection.mirror_base_url, ctx.root)
        return
    set_mirrors(ctx.root, ctx.selection.mirror_base_url)


CreateStep = Callable[..., None]

ALL_STEPS: List[tuple[str, CreateStep]] = [
    ("10_fetch_stage3", step_10_fetch_stage3),
    ("20_prepare_root", step_20_prepare_root),
    ("30_extract_stage3", step_30_extract_stage3),
    ("40_copy_dns", step_40_copy_dns),
    ("50_write_profile_info", step_50_write_profile_info),
    ("60_configure_mirrors", step_60_configure_mirrors),
]


def run_steps(*, ctx: CreateCtx, state: Dict[str, Any], force: bool = False) -> List[str]:
    """Run creation steps in order, skipping ones a previous attempt completed."""

    ran: List[str] = []
    exe = state.setdefault("execution", {})
    for step_id, fn in ALL_STEPS:
        exe["current_step"] = step_id
        if (not force) and is_step_completed(state, step_id):
            logger.info("[%s] skip %s", ctx.name, step_id)
            continue
        logger.info("[%s] run %s", ctx.name, step_id)
        fn(ctx=ctx, state=state)
        mark_step_completed(state, step_id)
        ran.append(step_id)
    exe["current_step"] = None
    return ran


def _creation_finished(state: Dict[str, Any]) -> bool:
    return all(is_step_completed(state, step_id) for step_id, _ in ALL_STEPS)


def create_chroot(
    cfg: ManagerConfig,
    name: str,
    selection: Selection,
    *,
    force: bool = False,
    force_download: bool = False,
    dry_run: bool = False,
    client: Optional[httpx.Client] = None,
    progress: Optional[ProgressCallback] = None,
) -> Dict[str, Any]:
    """Create (or resume creating) a chroot from an explicit Selection."""

    root = chroot_path(cfg.chroot_base_dir, name)
    state_path = Path(cfg.state_dir) / f"{root.name}.json"
    try:
        state = ensure_defaults(load_document(state_path))
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise StateError(f"Creation state {state_path} is unreadable: {e}") from e
    resuming = bool(state["execution"]["completed_steps"]) and not _creation_finished(state)

    if root.exists() and not resuming:
        if not force:
            raise ChrootExists(f"The chroot '{name}' already exists at {root}. Use another name or --force.")
        logger.warning("Removing existing chroot %s", root)
        run_cmd(["rm", "-rf", "--one-file-system", str(root)], dry_run=dry_run)
        state = ensure_defaults({})
    elif resuming:
        logger.info("Resuming creation of %s", name)
        if state.get("selection") and state["selection"] != selection.to_dict():
            logger.warning("Selection changed since the interrupted attempt; keeping the original one")
            try:
                selection = Selection.from_dict(state["selection"])
            except ValueError as e:
                raise StateError(f"Creation state {state_path} holds an unusable selection: {e}") from e
    else:
        state = ensure_defaults({})

    own_client = client is None
    ctx = CreateCtx(
        cfg=cfg,
        name=name,
        selection=selection,
        client=client or make_client(timeout=cfg.timeout),
        dry_run=dry_run,
        force_download=force_download,
        progress=progress,
    )
    state["selection"] = ctx.selection.to_dict()
    state["chroot"].update({"name": name, "path": str(ctx.root)})

    try:
        ran = run_steps(ctx=ctx, state=state)
        state["execution"]["ran_steps"] = ran
        logger.info("Chroot '%s' created at %s", name, ctx.root)
        return state
    except Exception as e:
        logger.exception("Creation of %s failed", name)
        state["execution"].setdefault("errors", []).append(
            {"step": state["execution"].get("current_step"), "error": str(e)}
        )
        raise
    finally:
        if not dry_run:
            save_document(ctx.state_path, state)
        if own_client:
            ctx.client.close()
