from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# Transfer schemes in fallback order. Anything unlisted sorts last.
PROTOCOL_PREFERENCE: Tuple[str, ...] = ("https", "http", "ftp", "rsync")
SECURE_PROTOCOLS = frozenset({"https"})
FETCHABLE_PROTOCOLS = frozenset({"https", "http"})


def protocol_rank(protocol: str) -> int:
    try:
        return PROTOCOL_PREFERENCE.index(protocol)
    except ValueError:
        return len(PROTOCOL_PREFERENCE)


@dataclass(frozen=True)
class MirrorRecord:
    """One mirror as published by the index.

    `region` is the country code used for exact matching; `continent` is the
    coarser group label. Either may be None when the index omits it.
    """

    identifier: str
    base_url: str
    region: Optional[str] = None
    continent: Optional[str] = None
    country_name: Optional[str] = None
    protocols: Tuple[str, ...] = ()
    uris: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def secure(self) -> bool:
        return any(p in SECURE_PROTOCOLS for p in self.protocols)

    def url_for(self, protocol: str) -> Optional[str]:
        protocol = protocol.lower()
        url = self.uris.get(protocol)
        if url is None and self.base_url.lower().startswith(protocol + "://"):
            return self.base_url
        return url


@dataclass(frozen=True)
class ProfileRecord:
    """A profile discovered on one mirror; only meaningful relative to it."""

    path: str
    mirror: MirrorRecord = field(compare=False)
    stage3_reference: str = ""

    @property
    def arch(self) -> str:
        return self.path.split("/", 1)[0]

    @property
    def variant(self) -> str:
        return self.path.split("/", 1)[1] if "/" in self.path else ""


class RankMethod(str, Enum):
    COUNTRY = "country"
    CONTINENT = "continent"
    DISTANT = "distant"
    UNRANKED = "unranked"


@dataclass(frozen=True)
class RankedMirror:
    mirror: MirrorRecord
    score: int
    method: RankMethod
    position: int


@dataclass(frozen=True)
class OperatorLocation:
    country: Optional[str] = None
    continent: Optional[str] = None

    @property
    def known(self) -> bool:
        return bool(self.country or self.continent)

    @classmethod
    def parse(cls, text: Optional[str]) -> "OperatorLocation":
        """Parse `DE`, `DE/Europe` or `Europe` into a location.

        Two-letter tokens are country codes; anything longer is a continent.
        """
        if not text or not text.strip():
            return cls()
        country: Optional[str] = None
        continent: Optional[str] = None
        for token in (t.strip() for t in text.split("/")):
            if not token:
                continue
            if len(token) == 2 and token.isalpha() and country is None:
                country = token.upper()
            elif continent is None:
                continent = token
        return cls(country=country, continent=continent)


@dataclass(frozen=True)
class Selection:
    """The persisted result of a resolution, consumed by chroot creation."""

    mirror_identifier: str
    mirror_base_url: str
    profile_path: str
    stage3_reference: str
    resolved_at: datetime

    @property
    def arch(self) -> str:
        return self.profile_path.split("/", 1)[0]

    @property
    def variant(self) -> str:
        return self.profile_path.split("/", 1)[1] if "/" in self.profile_path else ""

    def is_stale(self, max_age: timedelta, *, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.resolved_at > max_age

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mirror_identifier": self.mirror_identifier,
            "mirror_base_url": self.mirror_base_url,
            "profile_path": self.profile_path,
            "stage3_reference": self.stage3_reference,
            "resolved_at": self.resolved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Selection":
        missing = [
            k
            for k in ("mirror_identifier", "mirror_base_url", "profile_path", "stage3_reference", "resolved_at")
            if not data.get(k)
        ]
        if missing:
            raise ValueError(f"Selection is missing fields: {', '.join(missing)}")

        resolved_at = data["resolved_at"]
        if not isinstance(resolved_at, datetime):
            resolved_at = datetime.fromisoformat(str(resolved_at))
        if resolved_at.tzinfo is None:
            resolved_at = resolved_at.replace(tzinfo=timezone.utc)

        return cls(
            mirror_identifier=str(data["mirror_identifier"]),
            mirror_base_url=str(data["mirror_base_url"]),
            profile_path=str(data["profile_path"]),
            stage3_reference=str(data["stage3_reference"]),
            resolved_at=resolved_at,
        )
