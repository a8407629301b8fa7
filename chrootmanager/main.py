from __future__ import annotations

import argparse
import logging
from datetime import timedelta
from functools import partial
from typing import List, Optional

import httpx

from .catalog import load_catalog
from .chroots import enter_chroot, find_chroot, list_chroots, set_mirrors
from .config import ManagerConfig, default_config_path, default_log_path, load_config
from .create_steps import create_chroot
from .errors import ChrootManagerError, SelectionMissing
from .lib.http import make_client
from .lib.progress import DownloadProgress
from .logging_utils import configure_logging
from .models import MirrorRecord, OperatorLocation, Selection
from .profiles import discover_profiles
from .selection import Override, manual_mirror, resolve
from .selection_store import SelectionStore

logger = logging.getLogger(__name__)


def _load_catalog(cfg: ManagerConfig, client: httpx.Client) -> List[MirrorRecord]:
    return load_catalog(
        index_url=cfg.index_url,
        timeout=cfg.timeout,
        retries=cfg.retries,
        backoff=cfg.backoff,
        cache_path=cfg.catalog_cache,
        client=client,
    )


def _require_selection(store: SelectionStore) -> Selection:
    selection = store.load()
    if selection is None:
        raise SelectionMissing(f"No mirror selection at {store.path}; run 'chrootmanager mirror' first")
    return selection


def _print_selection(selection: Selection, cfg: ManagerConfig) -> None:
    print(f"mirror:   {selection.mirror_identifier}")
    print(f"url:      {selection.mirror_base_url}")
    print(f"profile:  {selection.profile_path}")
    print(f"stage3:   {selection.stage3_reference}")
    print(f"resolved: {selection.resolved_at.isoformat()}")
    if selection.is_stale(timedelta(days=cfg.max_age_days)):
        print(f"warning:  selection is older than {cfg.max_age_days} days; re-run 'chrootmanager mirror'")


def cmd_mirror(args: argparse.Namespace, cfg: ManagerConfig, client: httpx.Client) -> int:
    store = SelectionStore.at(cfg.selection_path)

    if args.show or args.sync:
        selection = _require_selection(store)
        if args.show:
            _print_selection(selection, cfg)
        if args.sync:
            for unit in list_chroots(cfg.chroot_base_dir):
                if args.dry_run:
                    logger.info("Would set mirror of %s to %s", unit.name, selection.mirror_base_url)
                    continue
                set_mirrors(unit.path, selection.mirror_base_url)
                print(f"{unit.name}: {selection.mirror_base_url}")
        return 0

    catalog = _load_catalog(cfg, client)
    location = OperatorLocation.parse(args.location or cfg.location)
    override = Override(mirror=args.mirror, protocol=args.protocol, profile=args.profile)
    selection = resolve(
        catalog,
        location,
        override,
        discover=partial(discover_profiles, timeout=cfg.timeout, client=client),
        store=None if args.dry_run else store,
        workers=args.workers or cfg.workers,
    )
    _print_selection(selection, cfg)
    return 0


def cmd_profiles(args: argparse.Namespace, cfg: ManagerConfig, client: httpx.Client) -> int:
    if args.mirror:
        mirror = manual_mirror(_load_catalog(cfg, client), Override(mirror=args.mirror))
    else:
        selection = _require_selection(SelectionStore.at(cfg.selection_path))
        mirror = MirrorRecord(identifier=selection.mirror_identifier, base_url=selection.mirror_base_url)

    for record in discover_profiles(mirror, cfg.timeout, client=client):
        print(f"{record.path}\t{record.stage3_reference}")
    return 0


def cmd_create(args: argparse.Namespace, cfg: ManagerConfig, client: httpx.Client) -> int:
    selection = _require_selection(SelectionStore.at(cfg.selection_path))
    if selection.is_stale(timedelta(days=cfg.max_age_days)):
        logger.warning("Mirror selection is older than %d days", cfg.max_age_days)

    with DownloadProgress(f"{args.name}: stage3") as progress:
        state = create_chroot(
            cfg,
            args.name,
            selection,
            force=bool(args.force),
            force_download=bool(args.force_download),
            dry_run=bool(args.dry_run),
            client=client,
            progress=progress,
        )
    print(f"{args.name}: {state['chroot'].get('path')} ({selection.profile_path})")
    return 0


def cmd_list(args: argparse.Namespace, cfg: ManagerConfig, client: httpx.Client) -> int:
    for unit in list_chroots(cfg.chroot_base_dir):
        print(f"{unit.name}\t{unit.profile or '-'}\t{unit.path}")
    return 0


def cmd_enter(args: argparse.Namespace, cfg: ManagerConfig, client: httpx.Client) -> int:
    unit = find_chroot(cfg.chroot_base_dir, args.name)
    return enter_chroot(unit, shell=args.shell, dry_run=bool(args.dry_run))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chrootmanager")
    p.add_argument("--config", default=None, help=f"Config file (default: {default_config_path()})")
    p.add_argument("--log", default=None, help=f"Log file (default: {default_log_path()})")
    p.add_argument("-v", "--verbose", action="store_true", help="Also show debug output on the console")
    p.add_argument("--dry-run", action="store_true", help="Log commands and writes without performing them")

    sub = p.add_subparsers(dest="subcmd", required=True)

    sp = sub.add_parser("mirror", help="Resolve and persist a mirror + profile selection")
    sp.add_argument("--location", default=None, help="Operator location, e.g. DE or DE/Europe")
    sp.add_argument("--mirror", default=None, help="Use this mirror (catalog name or base URL)")
    sp.add_argument("--protocol", default=None, help="Transfer scheme of the chosen mirror (https|http)")
    sp.add_argument("--profile", default=None, help="Profile path (amd64/openrc) or bare architecture")
    sp.add_argument("--workers", type=int, default=None, help="Mirrors probed concurrently")
    sp.add_argument("--show", action="store_true", help="Print the current selection")
    sp.add_argument("--sync", action="store_true", help="Point every chroot at the selected mirror")
    sp.set_defaults(func=cmd_mirror)

    sp = sub.add_parser("profiles", help="List profiles offered by a mirror")
    sp.add_argument("--mirror", default=None, help="Catalog name or base URL (default: selected mirror)")
    sp.set_defaults(func=cmd_profiles)

    sp = sub.add_parser("create", help="Create a chroot from the selection")
    sp.add_argument("name")
    sp.add_argument("--force-download", action="store_true", help="Download the stage3 even if cached")
    sp.add_argument("--force", action="store_true", help="Replace an existing chroot")
    sp.set_defaults(func=cmd_create)

    sp = sub.add_parser("list", help="List chroots")
    sp.set_defaults(func=cmd_list)

    sp = sub.add_parser("enter", help="Enter a chroot")
    sp.add_argument("name")
    sp.add_argument("--shell", default="/bin/bash")
    sp.set_defaults(func=cmd_enter)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    configure_logging(log_path=args.log, level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        cfg = load_config(args.config)
        with make_client(timeout=cfg.timeout) as client:
            return int(args.func(args, cfg, client))
    except ChrootManagerError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
