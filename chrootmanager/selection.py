from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from .errors import FetchError, NoUsableMirror
from .models import FETCHABLE_PROTOCOLS, MirrorRecord, OperatorLocation, ProfileRecord, Selection
from .profiles import pick_profile
from .ranking import rank
from .selection_store import SelectionStore

logger = logging.getLogger(__name__)

Discoverer = Callable[[MirrorRecord], List[ProfileRecord]]


@dataclass(frozen=True)
class Override:
    """Choices supplied by the operator instead of automatic iteration.

    `mirror` is an identifier from the catalog or a mirror base URL.
    """

    mirror: Optional[str] = None
    protocol: Optional[str] = None
    profile: Optional[str] = None

    @property
    def manual(self) -> bool:
        return bool(self.mirror)


def find_mirror(catalog: Sequence[MirrorRecord], choice: str) -> Optional[MirrorRecord]:
    wanted = choice.strip()
    for m in catalog:
        if m.identifier == wanted:
            return m
    bare = wanted.rstrip("/")
    for m in catalog:
        if m.base_url.rstrip("/") == bare or any(u.rstrip("/") == bare for u in m.uris.values()):
            return m
    return None


def with_protocol(mirror: MirrorRecord, protocol: str) -> Optional[MirrorRecord]:
    """mirror with base_url switched to its protocol URI, or None when it has no fetchable one."""

    protocol = protocol.lower()
    url = mirror.url_for(protocol)
    if url is None or protocol not in FETCHABLE_PROTOCOLS:
        return None
    return replace(mirror, base_url=url)


def manual_mirror(catalog: Sequence[MirrorRecord], override: Override) -> MirrorRecord:
    """The mirror an override names; a URL outside the catalog becomes an ad-hoc mirror."""

    assert override.mirror
    mirror = find_mirror(catalog, override.mirror)
    if mirror is None:
        parsed = urlparse(override.mirror)
        if parsed.scheme not in FETCHABLE_PROTOCOLS or not parsed.netloc:
            raise NoUsableMirror([(override.mirror, "not in the mirror catalog and not an http(s) URL")])
        logger.info("Using mirror URL outside the catalog: %s", override.mirror)
        mirror = MirrorRecord(
            identifier=override.mirror,
            base_url=override.mirror,
            protocols=(parsed.scheme,),
            uris={parsed.scheme: override.mirror},
        )

    if override.protocol:
        switched = with_protocol(mirror, override.protocol)
        if switched is None:
            raise NoUsableMirror([(mirror.identifier, f"no usable {override.protocol.lower()} URI")])
        mirror = switched
    return mirror


def _probe(candidates: Sequence[MirrorRecord], discover: Discoverer, workers: int) -> Iterator[Tuple[MirrorRecord, Future]]:
    """Yield (mirror, future) in candidate order, however the probes finish."""

    if workers <= 1:
        for mirror in candidates:
            fut: Future = Future()
            try:
                fut.set_result(discover(mirror))
            except FetchError as e:
                fut.set_exception(e)
            yield mirror, fut
        return

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe")
    try:
        futures = [executor.submit(discover, m) for m in candidates]
        for mirror, fut in zip(candidates, futures):
            yield mirror, fut
    finally:
        executor.shutdown(wait=True, cancel_futures=True)


def resolve(
    catalog: Sequence[MirrorRecord],
    location: Optional[OperatorLocation],
    override: Optional[Override] = None,
    *,
    discover: Discoverer,
    store: Optional[SelectionStore] = None,
    now: Optional[datetime] = None,
    workers: int = 1,
) -> Selection:
    """Pick the best usable mirror and profile, then persist the Selection.

    Geographic order is advisory: every ranked mirror is tried until one
    offers the wanted profile. A manual mirror is probed on its own.
    """

    override = override or Override()

    attempts: List[Tuple[str, str]] = []
    if override.manual:
        candidates = [manual_mirror(catalog, override)]
    elif override.protocol:
        candidates = []
        for r in rank(catalog, location):
            switched = with_protocol(r.mirror, override.protocol)
            if switched is None:
                attempts.append((r.mirror.identifier, f"no usable {override.protocol.lower()} URI"))
                continue
            candidates.append(switched)
    else:
        candidates = [r.mirror for r in rank(catalog, location)]

    chosen: Optional[ProfileRecord] = None
    chosen_mirror: Optional[MirrorRecord] = None
    with closing(_probe(candidates, discover, workers)) as probes:
        for mirror, fut in probes:
            try:
                records = fut.result()
            except FetchError as e:
                logger.warning("Mirror %s unusable: %s", mirror.identifier, e)
                attempts.append((mirror.identifier, f"{type(e).__name__}: {e}"))
                continue

            profile = pick_profile(records, override.profile)
            if profile is None:
                reason = f"profile {override.profile} not offered"
                logger.warning("Mirror %s unusable: %s", mirror.identifier, reason)
                attempts.append((mirror.identifier, reason))
                continue

            chosen, chosen_mirror = profile, mirror
            break

    if chosen is None or chosen_mirror is None:
        raise NoUsableMirror(attempts)

    selection = Selection(
        mirror_identifier=chosen_mirror.identifier,
        mirror_base_url=chosen_mirror.base_url,
        profile_path=chosen.path,
        stage3_reference=chosen.stage3_reference,
        resolved_at=now or datetime.now(timezone.utc),
    )
    logger.info(
        "Resolved mirror %s with profile %s after %d failed attempt(s)",
        selection.mirror_identifier,
        selection.profile_path,
        len(attempts),
    )

    if store is not None:
        store.save(selection)
    return selection
