# src/freight_estimator/connectors/index_sources.py
"""Freight index sources and the concurrent fetch registry.

An index source adapter is any object exposing::

    async def fetch_current(index_id: IndexId) -> IndexReading | None

and an alternate lookup any object exposing::

    async def search(index_id: IndexId) -> IndexReading | None

Adapters may raise; the registry absorbs failures, enforces a per-source
timeout and gives each failed or empty index one alternate lookup.
"""
from __future__ import annotations

import asyncio
import datetime
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import FreightIndexValue
from ..rules.index_catalog import IndexCatalog, IndexId

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 20.0


class Provenance(str, Enum):
    PRIMARY = "primary"
    FALLBACK_SEARCH = "fallback_search"


@dataclass(frozen=True)
class IndexReading:
    index_id: IndexId
    current_value: float
    change: Optional[float]
    as_of: datetime.date
    provenance: Provenance = Provenance.PRIMARY

    @property
    def is_usable(self) -> bool:
        return self.current_value is not None and self.current_value > 0


@dataclass(frozen=True)
class FetchOutcome:
    """What happened for one index during a fan-out."""

    index_id: IndexId
    reading: Optional[IndexReading]
    primary_error: Optional[str] = None
    fallback_error: Optional[str] = None
    fallback_attempted: bool = False


class SourceConfigurationError(RuntimeError):
    """Raised at startup when the catalog names an index without a source."""


class CachedIndexAdapter:
    """Latest value the scrapers stored in ``freight_index_values`` for an index."""

    def __init__(self, session_factory: Callable[[], Session], max_age_days: Optional[int] = None):
        self._session_factory = session_factory
        self.max_age_days = max_age_days

    def _latest(self, index_id: IndexId) -> Optional[IndexReading]:
        with self._session_factory() as db:
            stmt = (
                select(FreightIndexValue)
                .where(FreightIndexValue.index_name == index_id.value)
                .order_by(FreightIndexValue.index_date.desc(), FreightIndexValue.id.desc())
                .limit(1)
            )
            row = db.execute(stmt).scalar_one_or_none()
        if row is None:
            return None
        if self.max_age_days is not None:
            age = (datetime.date.today() - row.index_date).days
            if age > self.max_age_days:
                logger.info(f"{index_id.value}: stored value from {row.index_date} is {age} days old, ignoring")
                return None
        return IndexReading(
            index_id=index_id,
            current_value=float(row.current_index),
            change=float(row.change) if row.change is not None else None,
            as_of=row.index_date,
        )

    async def fetch_current(self, index_id: IndexId) -> Optional[IndexReading]:
        # Blocking query runs in a worker thread so the fan-out and its timeout stay live
        return await asyncio.to_thread(self._latest, index_id)


class IndexSourceRegistry:
    """Enum-keyed dispatch table of index adapters."""

    def __init__(
        self,
        adapters: Mapping[IndexId, Any],
        fallback: Optional[Any] = None,
        timeout: float = DEFAULT_TIMEOUT_S,
    ):
        self.adapters: Dict[IndexId, Any] = dict(adapters)
        self.fallback = fallback
        self.timeout = timeout

    @classmethod
    def for_catalog(
        cls,
        catalog: IndexCatalog,
        adapter: Any,
        fallback: Optional[Any] = None,
        timeout: float = DEFAULT_TIMEOUT_S,
    ) -> "IndexSourceRegistry":
        """Register one adapter instance for every index in the catalog."""

        return cls({index_id: adapter for index_id in catalog.index_ids}, fallback=fallback, timeout=timeout)

    def validate(self, catalog: IndexCatalog) -> None:
        missing = [i.value for i in catalog.index_ids if i not in self.adapters]
        if missing:
            raise SourceConfigurationError(f"No source adapter registered for: {', '.join(missing)}")

    async def _primary(self, index_id: IndexId) -> Optional[IndexReading]:
        adapter = self.adapters.get(index_id)
        if adapter is None:
            raise SourceConfigurationError(f"No source adapter registered for {index_id.value}")
        return await asyncio.wait_for(adapter.fetch_current(index_id), timeout=self.timeout)

    async def _alternate(self, index_id: IndexId) -> Optional[IndexReading]:
        reading = await asyncio.wait_for(self.fallback.search(index_id), timeout=self.timeout)
        if reading is None:
            return None
        if reading.provenance is not Provenance.FALLBACK_SEARCH:
            reading = IndexReading(
                index_id=reading.index_id,
                current_value=reading.current_value,
                change=reading.change,
                as_of=reading.as_of,
                provenance=Provenance.FALLBACK_SEARCH,
            )
        return reading

    @staticmethod
    def _describe(result: Any) -> Optional[str]:
        if isinstance(result, asyncio.TimeoutError):
            return "timed out"
        if isinstance(result, BaseException):
            return f"{type(result).__name__}: {result}"
        if result is None:
            return "no data"
        if not result.is_usable:
            return f"non-positive value {result.current_value}"
        return None

    async def fetch_all(self, index_ids: Iterable[IndexId]) -> Dict[IndexId, FetchOutcome]:
        """Fetch every index concurrently; every slot is settled before this returns."""

        ids: List[IndexId] = list(index_ids)
        primary = await asyncio.gather(*(self._primary(i) for i in ids), return_exceptions=True)

        outcomes: Dict[IndexId, FetchOutcome] = {}
        retry: List[IndexId] = []
        for index_id, result in zip(ids, primary):
            error = self._describe(result)
            if error is None:
                outcomes[index_id] = FetchOutcome(index_id, result)
                continue
            logger.warning(f"{index_id.value}: primary source failed ({error})")
            outcomes[index_id] = FetchOutcome(index_id, None, primary_error=error)
            if self.fallback is not None:
                retry.append(index_id)

        if retry:
            alternate = await asyncio.gather(*(self._alternate(i) for i in retry), return_exceptions=True)
            for index_id, result in zip(retry, alternate):
                error = self._describe(result)
                previous = outcomes[index_id]
                if error is None:
                    logger.info(f"{index_id.value}: recovered {result.current_value} from page search")
                else:
                    logger.warning(f"{index_id.value}: page search failed ({error})")
                outcomes[index_id] = FetchOutcome(
                    index_id,
                    result if error is None else None,
                    primary_error=previous.primary_error,
                    fallback_error=error,
                    fallback_attempted=True,
                )

        return outcomes
