from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from .models import MirrorRecord, OperatorLocation, RankedMirror, RankMethod

logger = logging.getLogger(__name__)

SCORE_COUNTRY = 0
SCORE_CONTINENT = 1
SCORE_OTHER = 2


def _norm(value: Optional[str]) -> Optional[str]:
    return value.strip().casefold() if value and value.strip() else None


def infer_continent(location: OperatorLocation, mirrors: Sequence[MirrorRecord]) -> OperatorLocation:
    """Fill a missing continent from the first mirror published for the same country."""

    if location.continent or not location.country:
        return location
    for m in mirrors:
        if m.region and m.region.upper() == location.country.upper() and m.continent:
            return OperatorLocation(country=location.country, continent=m.continent)
    return location


def score_mirror(mirror: MirrorRecord, location: OperatorLocation) -> Tuple[int, RankMethod]:
    if not location.known:
        return SCORE_OTHER, RankMethod.UNRANKED
    if location.country and mirror.region and mirror.region.upper() == location.country.upper():
        return SCORE_COUNTRY, RankMethod.COUNTRY
    if _norm(location.continent) and _norm(mirror.continent) == _norm(location.continent):
        return SCORE_CONTINENT, RankMethod.CONTINENT
    if not (mirror.region or mirror.continent):
        return SCORE_OTHER, RankMethod.UNRANKED
    return SCORE_OTHER, RankMethod.DISTANT


def rank(mirrors: Sequence[MirrorRecord], location: Optional[OperatorLocation] = None) -> List[RankedMirror]:
    """Order mirrors by proximity to the operator; never drops one.

    Key: region tier, then secure transport first, then identifier, then
    input position, which makes the order total.
    """

    location = infer_continent(location or OperatorLocation(), mirrors)

    ranked: List[RankedMirror] = []
    for position, mirror in enumerate(mirrors):
        score, method = score_mirror(mirror, location)
        ranked.append(RankedMirror(mirror=mirror, score=score, method=method, position=position))

    ranked.sort(key=lambda r: (r.score, 0 if r.mirror.secure else 1, r.mirror.identifier, r.position))

    if not location.known:
        logger.info("Operator location unknown; %d mirrors ordered by protocol and name", len(ranked))
    else:
        logger.debug(
            "Ranked %d mirrors for %s/%s", len(ranked), location.country or "-", location.continent or "-"
        )
    return ranked
