from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Callable, Optional

import httpx

from ..errors import FetchTimeout, IntegrityError, NoProfiles, Unreachable
from ..models import Selection
from .http import get_text, join_url

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

_IMAGE_SUFFIXES = (".tar.xz", ".tar.bz2", ".tar.gz", ".tar.zst")


def stage3_pattern(selection: Selection) -> str:
    return f"stage3-{selection.arch}-{selection.variant}"


def _pick_image(text: str, pattern: str) -> Optional[str]:
    """First image name for pattern in a latest-*.txt body (`name size` lines)."""

    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) >= 2 and pattern in parts[0] and parts[0].endswith(_IMAGE_SUFFIXES):
            return parts[0]
        # Some mirrors rewrite the layout; fall back to a substring scan.
        start = line.find(pattern)
        if start >= 0:
            rest = line[start:]
            for suffix in _IMAGE_SUFFIXES:
                end = rest.find(suffix)
                if end >= 0:
                    return rest[: end + len(suffix)]
    return None


def resolve_image_reference(
    client: httpx.Client,
    selection: Selection,
    *,
    timeout: Optional[float] = None,
) -> str:
    """Turn the selection's stage3 reference into a concrete image path.

    Directory references (trailing '/') are resolved through the
    latest-stage3-ARCH-VARIANT.txt file published inside them.
    """

    ref = selection.stage3_reference
    if not ref.endswith("/"):
        return ref

    pattern = stage3_pattern(selection)
    latest_url = join_url(selection.mirror_base_url, ref, f"latest-{pattern}.txt")
    fetched = get_text(client, latest_url, timeout=timeout, allow_missing=True)
    if fetched is None:
        raise NoProfiles(f"No latest-{pattern}.txt under {ref}", url=latest_url)

    image = _pick_image(fetched.text, pattern)
    if image is None:
        raise NoProfiles(f"No stage3 image for {pattern} listed in {latest_url}", url=latest_url)

    logger.info("Current stage3 for %s: %s", selection.profile_path, image)
    return f"{ref}{image}"


def fetch_sha256(client: httpx.Client, image_url: str, *, timeout: Optional[float] = None) -> Optional[str]:
    """Expected digest from the `.sha256` file next to an image, None if unpublished."""

    fetched = get_text(client, f"{image_url}.sha256", timeout=timeout, allow_missing=True)
    if fetched is None:
        return None

    filename = image_url.rsplit("/", 1)[-1]
    for line in fetched.text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) >= 2 and parts[1].lstrip("*").endswith(filename):
            return parts[0].lower()
    return None


def file_sha256(path: str | Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest: Path,
    *,
    timeout: Optional[float] = None,
    progress: Optional[ProgressCallback] = None,
) -> Path:
    """Stream url into dest through a .part file."""

    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + ".part")
    kwargs = {} if timeout is None else {"timeout": timeout}
    logger.info("Downloading %s -> %s", url, dest)
    try:
        with client.stream("GET", url, **kwargs) as resp:
            if not resp.is_success:
                raise Unreachable(f"HTTP {resp.status_code} from {url}", url=url)
            total = int(resp.headers.get("content-length") or 0)
            done = 0
            with part.open("wb") as f:
                for chunk in resp.iter_bytes():
                    f.write(chunk)
                    done += len(chunk)
                    if progress is not None:
                        progress(done, total)
    except httpx.TimeoutException as e:
        part.unlink(missing_ok=True)
        raise FetchTimeout(f"Timed out downloading {url}", url=url) from e
    except httpx.RequestError as e:
        part.unlink(missing_ok=True)
        raise Unreachable(f"Cannot download {url}: {e}", url=url) from e
    except BaseException:
        part.unlink(missing_ok=True)
        raise

    part.replace(dest)
    return dest


def fetch_stage3(
    client: httpx.Client,
    selection: Selection,
    cache_dir: str | Path,
    *,
    timeout: Optional[float] = None,
    force_download: bool = False,
    progress: Optional[ProgressCallback] = None,
) -> Path:
    """Return a verified local copy of the selection's base image, downloading if needed."""

    reference = resolve_image_reference(client, selection, timeout=timeout)
    url = join_url(selection.mirror_base_url, reference)
    cached = Path(cache_dir).expanduser() / reference.rsplit("/", 1)[-1]

    if cached.exists() and not force_download:
        logger.info("Using cached stage3 %s", cached)
        return cached

    expected = fetch_sha256(client, url, timeout=timeout)
    download_file(client, url, cached, timeout=timeout, progress=progress)

    if expected is None:
        logger.warning("No SHA256 published for %s; integrity not verified", url)
        return cached

    actual = file_sha256(cached)
    if actual != expected:
        cached.unlink(missing_ok=True)
        raise IntegrityError(f"SHA256 mismatch for {cached.name}: expected {expected}, got {actual}")

    logger.info("SHA256 verified for %s", cached.name)
    return cached
