from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse
from xml.etree import ElementTree

import httpx

from .errors import FetchError, MalformedIndex
from .lib.http import get_text, make_client
from .models import FETCHABLE_PROTOCOLS, MirrorRecord, protocol_rank
from .state_store import write_atomic

logger = logging.getLogger(__name__)

DEFAULT_INDEX_URL = "https://api.gentoo.org/mirrors/distfiles.xml"


def _attr(el: ElementTree.Element, name: str) -> Optional[str]:
    value = (el.get(name) or "").strip()
    return value or None


def _well_formed(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in FETCHABLE_PROTOCOLS and bool(parsed.netloc)


def _parse_mirror(
    mirror_el: ElementTree.Element,
    *,
    continent: Optional[str],
    country: Optional[str],
    country_name: Optional[str],
) -> Optional[MirrorRecord]:
    uris: Dict[str, str] = {}
    for uri_el in mirror_el.findall("uri"):
        text = (uri_el.text or "").strip()
        if not text:
            logger.warning("Empty URI ignored")
            continue
        protocol = (uri_el.get("protocol") or urlparse(text).scheme or "unknown").strip().lower()
        # First URI per protocol wins.
        uris.setdefault(protocol, text)

    name = (mirror_el.findtext("name") or "").strip()

    if not uris:
        logger.warning("Mirror ignored because it has no URI: %s", name or "<unnamed>")
        return None

    fetchable = sorted((p for p in uris if p in FETCHABLE_PROTOCOLS), key=protocol_rank)
    base_url = next((uris[p] for p in fetchable if _well_formed(uris[p])), None)
    if base_url is None:
        logger.warning("Mirror ignored because it has no usable http(s) URI: %s", name or sorted(uris.values())[0])
        return None

    if not name:
        name = next(iter(uris.values()))
        logger.warning("Missing mirror name, using URI: %s", name)

    return MirrorRecord(
        identifier=name,
        base_url=base_url,
        region=country.upper() if country else None,
        continent=continent,
        country_name=country_name,
        protocols=tuple(sorted(uris, key=lambda p: (protocol_rank(p), p))),
        uris=uris,
    )


def parse_catalog(data: str | bytes, *, source: Optional[str] = None) -> List[MirrorRecord]:
    """Parse a mirror index into MirrorRecords, in document order.

    Malformed mirrors are skipped and logged; the whole index only fails
    when nothing usable remains.
    """

    if not data or not data.strip():
        raise MalformedIndex("Mirror index is empty", url=source)

    try:
        root = ElementTree.fromstring(data)
    except ElementTree.ParseError as e:
        raise MalformedIndex(f"Mirror index is not valid XML: {e}", url=source) from e

    if root.tag != "mirrors":
        raise MalformedIndex(f"Unexpected root element '{root.tag}', expected 'mirrors'", url=source)

    records: List[MirrorRecord] = []
    seen: set[str] = set()
    for group in root.findall("mirrorgroup"):
        continent = _attr(group, "region")
        country = _attr(group, "country")
        country_name = _attr(group, "countryname")
        for mirror_el in group.findall("mirror"):
            rec = _parse_mirror(mirror_el, continent=continent, country=country, country_name=country_name)
            if rec is None:
                continue
            if rec.identifier in seen:
                logger.warning("Duplicate mirror identifier ignored: %s", rec.identifier)
                continue
            seen.add(rec.identifier)
            records.append(rec)

    if not records:
        raise MalformedIndex("Mirror index contains no valid mirror", url=source)

    logger.info("Parsed %d mirrors from %s", len(records), source or "index")
    return records


def fetch_index(
    index_url: str = DEFAULT_INDEX_URL,
    timeout: float = 30.0,
    *,
    client: Optional[httpx.Client] = None,
) -> str:
    """Fetch the raw mirror index text. No disk writes."""

    logger.info("Retrieving mirror index from %s", index_url)
    if client is None:
        with make_client(timeout=timeout) as own:
            fetched = get_text(own, index_url)
    else:
        fetched = get_text(client, index_url, timeout=timeout)
    assert fetched is not None
    return fetched.text


def fetch_catalog(
    index_url: str = DEFAULT_INDEX_URL,
    timeout: float = 30.0,
    *,
    client: Optional[httpx.Client] = None,
) -> List[MirrorRecord]:
    """Fetch and parse the mirror index: all of it, or an error."""

    return parse_catalog(fetch_index(index_url, timeout, client=client), source=index_url)


def load_catalog(
    *,
    index_url: str = DEFAULT_INDEX_URL,
    timeout: float = 30.0,
    retries: int = 2,
    backoff: float = 1.0,
    cache_path: Optional[str] = None,
    client: Optional[httpx.Client] = None,
    sleep=time.sleep,
) -> List[MirrorRecord]:
    """Fetch the catalog with retries, falling back to the cached index.

    A freshly fetched index that parses is written to cache_path.
    """

    last_error: Optional[FetchError] = None
    for attempt in range(retries + 1):
        if attempt:
            delay = backoff * attempt
            logger.info("Retrying mirror index in %.1fs (attempt %d/%d)", delay, attempt + 1, retries + 1)
            sleep(delay)
        try:
            text = fetch_index(index_url, timeout, client=client)
            records = parse_catalog(text, source=index_url)
        except FetchError as e:
            logger.warning("Mirror index fetch failed: %s", e)
            last_error = e
            continue

        if cache_path:
            try:
                write_atomic(cache_path, text)
                logger.debug("Cached mirror index at %s", cache_path)
            except OSError as e:
                logger.warning("Cannot cache mirror index at %s: %s", cache_path, e)
        return records

    if cache_path and Path(cache_path).exists():
        logger.warning("Using cached mirror index %s", cache_path)
        return parse_catalog(Path(cache_path).read_text(encoding="utf-8"), source=cache_path)

    assert last_error is not None
    raise last_error
