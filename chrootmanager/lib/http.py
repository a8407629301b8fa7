from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .. import __version__
from ..errors import FetchTimeout, Unreachable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
USER_AGENT = f"chrootmanager/{__version__}"


@dataclass(frozen=True)
class Fetched:
    url: str
    status: int
    content_type: str
    text: str


def make_client(
    *,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """Build the client shared by every fetch of one invocation."""

    return httpx.Client(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


def join_url(base_url: str, *parts: str) -> str:
    url = base_url
    for part in parts:
        url = f"{url.rstrip('/')}/{part.lstrip('/')}"
    return url


def get_text(
    client: httpx.Client,
    url: str,
    *,
    timeout: Optional[float] = None,
    allow_missing: bool = False,
) -> Optional[Fetched]:
    """GET a URL and map transport failures onto the fetch error taxonomy.

    Returns None for a 404 when allow_missing is set.
    """

    logger.debug("GET %s", url)
    kwargs = {} if timeout is None else {"timeout": timeout}
    try:
        resp = client.get(url, **kwargs)
    except httpx.TimeoutException as e:
        raise FetchTimeout(f"Timed out fetching {url}", url=url) from e
    except httpx.RequestError as e:
        raise Unreachable(f"Cannot reach {url}: {e}", url=url) from e
    except httpx.InvalidURL as e:
        raise Unreachable(f"Invalid URL {url}: {e}", url=url) from e

    if resp.status_code == 404 and allow_missing:
        logger.debug("Missing (404): %s", url)
        return None
    if not resp.is_success:
        raise Unreachable(f"HTTP {resp.status_code} from {url}", url=url)

    logger.debug("Received %d bytes from %s", len(resp.content), url)
    return Fetched(
        url=str(resp.url),
        status=resp.status_code,
        content_type=resp.headers.get("content-type", ""),
        text=resp.text,
    )
