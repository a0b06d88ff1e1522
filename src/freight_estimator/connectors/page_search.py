# src/freight_estimator/connectors/page_search.py
from __future__ import annotations

import datetime
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from lxml import etree, html

from ..rules.index_catalog import IndexId
from .index_sources import IndexReading, Provenance

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20
UA = "FreightEstimator/1.0 (+index page search)"
CACHE_TTL_S = 900  # 15 min default

# Simple in-process TTL cache
_cache: Dict[str, Tuple[float, Any]] = {}


def _get_cached(key: str) -> Optional[Any]:
    v = _cache.get(key)
    if not v:
        return None
    exp, data = v
    if exp < time.time():
        _cache.pop(key, None)
        return None
    return data


def _set_cached(key: str, value: Any, ttl_s: int = CACHE_TTL_S) -> None:
    _cache[key] = (time.time() + ttl_s, value)


def clear_cache() -> None:
    _cache.clear()


_ISO_DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_LONG_DATE = re.compile(r"\b([A-Z][a-z]+ \d{1,2}, \d{4})\b")


def _parse_number(text: str) -> Optional[float]:
    cleaned = text.strip().replace(",", "")
    m = re.search(r"-?\d+(?:\.\d+)?", cleaned)
    if not m:
        return None
    return float(m.group(0))


def _parse_date(text: str) -> Optional[datetime.date]:
    text = text.strip()
    m = _ISO_DATE.search(text)
    if m:
        try:
            return datetime.date.fromisoformat(m.group(1))
        except ValueError:
            pass
    m = _LONG_DATE.search(text)
    if m:
        try:
            return datetime.datetime.strptime(m.group(1), "%B %d, %Y").date()
        except ValueError:
            pass
    return None


def extract_index_value(
    page_html: str,
    index_id: IndexId,
    today: Optional[datetime.date] = None,
) -> Optional[IndexReading]:
    """Pull an index value from a market report page.

    Tables are tried first (row naming the index, value in the second cell
    and date in the fourth), then paragraphs of the form ``<NAME> ... <number>``.
    """
    today = today or datetime.date.today()
    tree = html.fromstring(page_html)
    name = index_id.value
    name_re = re.compile(rf"\b{re.escape(name)}\b")

    for row in tree.xpath("//tr"):
        cells = [c.text_content().strip() for c in row.xpath("./td")]
        if len(cells) < 4 or not name_re.search(cells[0]):
            continue
        value = _parse_number(cells[1])
        if value is None:
            continue
        return IndexReading(
            index_id=index_id,
            current_value=value,
            change=_parse_number(cells[2]),
            as_of=_parse_date(cells[3]) or today,
            provenance=Provenance.FALLBACK_SEARCH,
        )

    value_re = re.compile(rf"\b{re.escape(name)}\b[^0-9]*([0-9][0-9,]*(?:\.[0-9]+)?)")
    for p in tree.xpath("//p"):
        text = p.text_content()
        m = value_re.search(text)
        if not m:
            continue
        value = _parse_number(m.group(1))
        if value is None:
            continue
        return IndexReading(
            index_id=index_id,
            current_value=value,
            change=None,
            as_of=_parse_date(text) or today,
            provenance=Provenance.FALLBACK_SEARCH,
        )
    return None


class PageSearchLookup:
    """Alternate lookup that scans public market report pages for an index value."""

    def __init__(
        self,
        urls: Sequence[str],
        timeout: float = DEFAULT_TIMEOUT,
        cache_ttl: int = CACHE_TTL_S,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.urls: List[str] = list(urls)
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=self.timeout, headers={"User-Agent": UA}, follow_redirects=True)
        )

    async def _fetch_page(self, client: httpx.AsyncClient, url: str) -> Optional[str]:
        ck = f"page::{url}"
        cached = _get_cached(ck)
        if cached is not None:
            return cached
        try:
            r = await client.get(url)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"HTTP error fetching {url}: {e.response.status_code}")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch {url}: {e}")
            return None
        _set_cached(ck, r.text, self.cache_ttl)
        return r.text

    async def search(self, index_id: IndexId) -> Optional[IndexReading]:
        if not self.urls:
            return None
        async with self._client_factory() as client:
            for url in self.urls:
                page = await self._fetch_page(client, url)
                if not page:
                    continue
                try:
                    reading = extract_index_value(page, index_id)
                except (etree.ParserError, ValueError) as e:
                    logger.warning(f"Failed to parse {url} for {index_id.value}: {e}")
                    continue
                if reading is not None and reading.is_usable:
                    logger.info(f"Page search found {index_id.value}={reading.current_value} at {url}")
                    return reading
        logger.warning(f"Page search could not find {index_id.value} on {len(self.urls)} pages")
        return None
