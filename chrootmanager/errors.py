from __future__ import annotations

from typing import List, Optional, Tuple


class ChrootManagerError(RuntimeError):
    """Base class for every error the CLI reports instead of crashing on."""


class FetchError(ChrootManagerError):
    """A remote source could not provide usable data."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class Unreachable(FetchError):
    """Connection refused, DNS failure or an unexpected HTTP status."""


class FetchTimeout(FetchError):
    """The bounded wait for a remote source was exceeded."""


class MalformedIndex(FetchError):
    """The mirror index was fetched but contained no valid mirror."""


class NoProfiles(FetchError):
    """The mirror answered but offers nothing usable."""


class NoUsableMirror(ChrootManagerError):
    def __init__(self, attempts: List[Tuple[str, str]]) -> None:
        self.attempts = list(attempts)
        if not self.attempts:
            message = "No usable mirror: the catalog is empty"
        else:
            lines = [f"  {ident}: {reason}" for ident, reason in self.attempts]
            message = "No usable mirror, tried:\n" + "\n".join(lines)
        super().__init__(message)


class PersistenceError(ChrootManagerError):
    pass


class SelectionMissing(ChrootManagerError):
    pass


class ChrootExists(ChrootManagerError):
    pass


class ChrootNotFound(ChrootManagerError):
    pass


class InvalidName(ChrootManagerError):
    pass


class StateError(ChrootManagerError):
    """A saved creation state cannot be resumed."""


class IntegrityError(ChrootManagerError):
    pass


class ConfigError(ChrootManagerError):
    pass


class CommandError(ChrootManagerError):
    def __init__(self, message: str, *, returncode: int) -> None:
        super().__init__(message)
        self.returncode = returncode
