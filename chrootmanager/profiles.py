from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import httpx

from .errors import FetchError, NoProfiles
from .lib.http import Fetched, get_text, join_url, make_client
from .models import MirrorRecord, ProfileRecord

logger = logging.getLogger(__name__)

KNOWN_ARCHITECTURES = frozenset(
    {
        "alpha",
        "amd64",
        "arm",
        "arm64",
        "hppa",
        "ia64",
        "loong",
        "m68k",
        "mips",
        "ppc",
        "ppc64",
        "riscv",
        "s390",
        "sparc",
        "x86",
    }
)

MANIFEST_NAME = "latest-stage3.txt"
DEFAULT_ARCH = "amd64"

_HREF_RE = re.compile(r"""href\s*=\s*["']?([^"'\s>]+)""", re.IGNORECASE)
_DATE_RE = r"(?P<date>\d{8}(?:T\d{6}Z)?)"


# --- listing parsers --------------------------------------------------------
#
# Each parser turns a listing body into entry names relative to the listed
# directory. Directories keep their trailing slash.


def parse_html_listing(body: str) -> List[str]:
    entries: List[str] = []
    for href in _HREF_RE.findall(body):
        if href.startswith("./"):
            href = href[2:]
        if not href or href.startswith(("?", "#", "/", "..")) or "://" in href:
            continue
        entries.append(href)
    return entries


def parse_manifest_listing(body: str) -> List[str]:
    """`latest-stage3.txt` style: `<relative path> <size>` per line, `#` comments."""

    entries: List[str] = []
    for line in body.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        entries.append(line.split()[0])
    return entries


LISTING_PARSERS: Dict[str, Callable[[str], List[str]]] = {
    "html": parse_html_listing,
    "manifest": parse_manifest_listing,
}


def detect_format(content_type: str, body: str) -> str:
    if "html" in (content_type or "").lower():
        return "html"
    if body.lstrip().startswith("<"):
        return "html"
    return "manifest"


def parse_listing(fetched: Fetched) -> List[str]:
    fmt = detect_format(fetched.content_type, fetched.text)
    logger.debug("Listing %s detected as %s", fetched.url, fmt)
    return LISTING_PARSERS[fmt](fetched.text)


# --- entry grammar ----------------------------------------------------------


@dataclass(frozen=True)
class ProfileEntry:
    """A listing entry that matched the profile grammar for one architecture."""

    variant: str
    reference: str
    date: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.date is not None


def _image_re(arch: str) -> re.Pattern[str]:
    return re.compile(
        r"^(?:(?P<stamp>[^/]+)/)?stage3-" + re.escape(arch) + r"-(?P<variant>.+?)-" + _DATE_RE
        + r"\.tar\.(?:xz|bz2|gz|zst)$"
    )


def _dir_re(arch: str) -> re.Pattern[str]:
    return re.compile(r"^current-stage3-" + re.escape(arch) + r"-(?P<variant>[^/]+)/?$")


def match_entries(entries: Iterable[str], arch: str, autobuilds_path: str) -> List[ProfileEntry]:
    """Keep entries of the form stage3 image or current-stage3 directory."""

    image_re = _image_re(arch)
    dir_re = _dir_re(arch)
    matched: List[ProfileEntry] = []
    for entry in entries:
        m = image_re.match(entry)
        if m:
            matched.append(
                ProfileEntry(
                    variant=m.group("variant"),
                    reference=f"{autobuilds_path}/{entry}",
                    date=m.group("date"),
                )
            )
            continue
        m = dir_re.match(entry)
        if m:
            matched.append(
                ProfileEntry(variant=m.group("variant"), reference=f"{autobuilds_path}/{m.group(0).rstrip('/')}/")
            )
            continue
        logger.debug("Listing entry ignored for %s: %s", arch, entry)
    return matched


def collapse_entries(entries: Iterable[ProfileEntry]) -> Dict[str, ProfileEntry]:
    """One entry per variant: an image beats a directory, the latest image wins."""

    best: Dict[str, ProfileEntry] = {}
    for entry in entries:
        current = best.get(entry.variant)
        if current is None:
            best[entry.variant] = entry
        elif entry.is_image and (not current.is_image or (entry.date or "") > (current.date or "")):
            best[entry.variant] = entry
    return best


# --- discovery --------------------------------------------------------------


def _list_architectures(client: httpx.Client, mirror: MirrorRecord, timeout: Optional[float]) -> List[str]:
    url = join_url(mirror.base_url, "releases") + "/"
    fetched = get_text(client, url, timeout=timeout, allow_missing=True)
    if fetched is None:
        return []
    archs = {e.rstrip("/") for e in parse_listing(fetched) if e.endswith("/")}
    found = sorted(a for a in archs if a in KNOWN_ARCHITECTURES)
    logger.debug("Architectures on %s: %s", mirror.identifier, found)
    return found


def _discover_arch(
    client: httpx.Client,
    mirror: MirrorRecord,
    arch: str,
    timeout: Optional[float],
) -> List[ProfileEntry]:
    autobuilds_path = f"releases/{arch}/autobuilds"
    autobuilds_url = join_url(mirror.base_url, autobuilds_path)

    manifest = get_text(client, f"{autobuilds_url}/{MANIFEST_NAME}", timeout=timeout, allow_missing=True)
    if manifest is not None:
        entries = match_entries(parse_listing(manifest), arch, autobuilds_path)
        if entries:
            return entries
        logger.debug("Manifest for %s on %s had no usable entry", arch, mirror.identifier)

    listing = get_text(client, f"{autobuilds_url}/", timeout=timeout, allow_missing=True)
    if listing is None:
        return []
    return match_entries(parse_listing(listing), arch, autobuilds_path)


def discover_profiles(
    mirror: MirrorRecord,
    timeout: float = 30.0,
    *,
    client: Optional[httpx.Client] = None,
) -> List[ProfileRecord]:
    """Enumerate the profiles a mirror offers, sorted by path.

    Raises NoProfiles when the mirror answers but nothing matches, and
    Unreachable/FetchTimeout when its release listing cannot be fetched.
    """

    if client is None:
        with make_client(timeout=timeout) as own:
            return discover_profiles(mirror, timeout, client=own)

    logger.info("Discovering profiles on %s (%s)", mirror.identifier, mirror.base_url)
    archs = _list_architectures(client, mirror, timeout)

    records: List[ProfileRecord] = []
    for arch in archs:
        try:
            entries = _discover_arch(client, mirror, arch, timeout)
        except FetchError as e:
            logger.warning("Failed to discover profiles for %s on %s: %s", arch, mirror.identifier, e)
            continue
        for variant, entry in collapse_entries(entries).items():
            records.append(ProfileRecord(path=f"{arch}/{variant}", mirror=mirror, stage3_reference=entry.reference))

    if not records:
        raise NoProfiles(f"Mirror {mirror.identifier} offers no usable profile", url=mirror.base_url)

    records.sort(key=lambda r: r.path)
    logger.info("Found %d profiles on %s", len(records), mirror.identifier)
    return records


def default_profile(records: List[ProfileRecord], arch: Optional[str] = None) -> Optional[ProfileRecord]:
    """Pick the plain openrc variant of an architecture, else its first profile."""

    pool = [r for r in records if arch is None or r.arch == arch]
    if not pool:
        return None
    if arch is None:
        return pool[0]
    for r in pool:
        if "openrc" in r.variant and "desktop" not in r.variant and "hardened" not in r.variant:
            return r
    return pool[0]


def pick_profile(records: List[ProfileRecord], requested: Optional[str] = None) -> Optional[ProfileRecord]:
    """Resolve a requested profile path (or bare architecture) against a discovered set."""

    if not requested:
        return default_profile(records, arch=DEFAULT_ARCH) or default_profile(records)
    requested = requested.strip().strip("/")
    for r in records:
        if r.path == requested:
            return r
    if "/" not in requested:
        return default_profile(records, arch=requested)
    return None
