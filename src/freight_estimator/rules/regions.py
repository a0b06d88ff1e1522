"""Port → trade region lookup used to gate region-specific pricing."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import Port

logger = logging.getLogger(__name__)

UNKNOWN_REGION = "Unknown"

CACHE_TTL_S = 3600
MAX_CACHED_PORTS = 4096

# Default gate for the ISTFIX blend.
INTRA_ASIA_REGIONS = frozenset({"Asia", "China"})

# Well-known UN/LOCODEs, used when the ports table has no region for a code.
STATIC_REGIONS: Dict[str, str] = {
    # China
    "CNSHA": "China", "CNYTN": "China", "CNNGB": "China", "CNQIN": "China", "CNDAL": "China",
    # Asia
    "HKHKG": "Asia", "SGSIN": "Asia", "JPOSA": "Asia", "JPTYO": "Asia", "KRPUS": "Asia",
    "VNSGN": "Asia", "MYLPK": "Asia", "IDTPP": "Asia", "THBKK": "Asia", "PHMNL": "Asia",
    # Europe
    "DEHAM": "Europe", "NLRTM": "Europe", "GBFXT": "Europe", "FRLEH": "Europe",
    "BEANR": "Europe", "ESBCN": "Europe", "ITGOA": "Europe", "GRPIR": "Europe",
    # Mediterranean
    "ITTRS": "Mediterranean", "ESVLC": "Mediterranean", "FRFOS": "Mediterranean",
    "TRMER": "Mediterranean", "EGPSD": "Mediterranean",
    # North America
    "USLAX": "North America", "USSEA": "North America", "USNYC": "North America",
    "USBAL": "North America", "USSAV": "North America", "USHOU": "North America",
    "CAMTR": "North America", "CAVNC": "North America",
    # Middle East
    "AEJEA": "Middle East", "AEDXB": "Middle East", "SAJED": "Middle East",
    "IQBSR": "Middle East", "IRBND": "Middle East",
    # Oceania
    "AUSYD": "Oceania", "AUMEL": "Oceania", "NZAKL": "Oceania",
    # Africa
    "ZALGS": "Africa", "ZADUR": "Africa", "MAPTM": "Africa", "EGALY": "Africa",
    "TZDAR": "Africa", "KEMBA": "Africa",
    # South America
    "BRSSZ": "South America", "ARBUE": "South America", "CLVAP": "South America",
    "PECLL": "South America", "COBUN": "South America", "ECGYE": "South America",
}


def is_intra_asia(
    origin_region: str,
    destination_region: str,
    gate_regions: Iterable[str] = INTRA_ASIA_REGIONS,
) -> bool:
    gate = frozenset(gate_regions) - {UNKNOWN_REGION}
    return origin_region in gate and destination_region in gate


class RegionResolver:
    """Resolve a port code to its region: ports table, then static map, then ``Unknown``.

    Only answers the ports table actually gave are cached, for ``cache_ttl``
    seconds and at most ``max_cached`` codes. Lookups made while the database
    is unreachable are served from the static map and retried next time.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        static_map: Optional[Dict[str, str]] = None,
        cache_ttl: float = CACHE_TTL_S,
        max_cached: int = MAX_CACHED_PORTS,
    ):
        self._session_factory = session_factory
        self._static = STATIC_REGIONS if static_map is None else static_map
        self.cache_ttl = cache_ttl
        self.max_cached = max_cached
        self._cache: Dict[str, Tuple[float, Optional[str]]] = {}
        self._lock = threading.Lock()

    def _get_cached(self, code: str) -> Tuple[bool, Optional[str]]:
        v = self._cache.get(code)
        if not v:
            return False, None
        exp, region = v
        if time.time() > exp:
            self._cache.pop(code, None)
            return False, None
        return True, region

    def _set_cached(self, code: str, region: Optional[str]) -> None:
        with self._lock:
            self._cache.pop(code, None)
            while len(self._cache) >= self.max_cached:
                # dicts keep insertion order, so the first key is the oldest entry
                self._cache.pop(next(iter(self._cache)))
            self._cache[code] = (time.time() + self.cache_ttl, region)

    def region_of(self, port_id: str) -> str:
        code = (port_id or "").strip().upper()
        hit, db_region = self._get_cached(code)
        if not hit and self._session_factory is not None:
            try:
                with self._session_factory() as db:
                    db_region = db.execute(select(Port.region).where(Port.code == code)).scalar_one_or_none()
            except SQLAlchemyError as e:
                logger.warning(f"Region lookup failed for {code}: {e}")
            else:
                self._set_cached(code, db_region)
        return db_region or self._static.get(code) or UNKNOWN_REGION
