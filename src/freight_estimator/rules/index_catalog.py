"""Freight index catalog loader.

The catalog classifies every index the engine knows about into core indices
(weighted into the base ocean-freight rate) and modifier indices (charter,
demand and the intra-Asia blend). Weights and baselines come from a JSON
registry so they can be changed without touching code, and can be overridden
per environment from the ``index_config`` table.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import IndexConfig

__all__ = [
    "CatalogError",
    "IndexCatalog",
    "IndexCategory",
    "IndexId",
    "IndexSpec",
    "MissingCatalogField",
    "catalog_overrides_from_db",
    "load_index_catalog",
]

logger = logging.getLogger(__name__)


class CatalogError(ValueError):
    """Raised when the catalog registry is structurally invalid."""


class MissingCatalogField(KeyError):
    """Raised when an expected field is missing from the catalog registry."""

    def __init__(self, field_path: str):
        super().__init__(field_path)
        self.field_path = field_path

    def __str__(self) -> str:  # pragma: no cover - inherited KeyError repr is noisy
        return f"missing required catalog field: {self.field_path}"


class IndexId(str, Enum):
    SCFI = "SCFI"
    FBX = "FBX"
    WCI = "WCI"
    CCFI = "CCFI"
    HARPEX = "Harpex"
    NEWCONTEX = "NewConTex"
    BDI = "BDI"
    CTS = "CTS"
    ISTFIX = "ISTFIX"

    @classmethod
    def parse(cls, name: str) -> "IndexId":
        try:
            return cls(name)
        except ValueError:
            raise CatalogError(f"unknown index name: {name!r}") from None


class IndexCategory(str, Enum):
    CORE = "core"
    CHARTER = "charter"
    DEMAND = "demand"
    INTRA_ASIA = "intra_asia"


# Categories applied multiplicatively against a baseline.
BASELINE_CATEGORIES = {IndexCategory.CHARTER, IndexCategory.DEMAND}


@dataclass(frozen=True)
class IndexSpec:
    index_id: IndexId
    category: IndexCategory
    weight: float
    baseline: Optional[float] = None

    @property
    def is_core(self) -> bool:
        return self.category is IndexCategory.CORE


@dataclass(frozen=True)
class IndexCatalog:
    version: str
    indices: Mapping[IndexId, IndexSpec]

    def spec(self, index_id: IndexId) -> IndexSpec:
        return self.indices[index_id]

    def in_category(self, category: IndexCategory) -> List[IndexSpec]:
        return [s for s in self.indices.values() if s.category is category]

    @property
    def core(self) -> List[IndexSpec]:
        return self.in_category(IndexCategory.CORE)

    @property
    def index_ids(self) -> List[IndexId]:
        return list(self.indices)

    def with_overrides(
        self, overrides: Mapping[IndexId, Tuple[Optional[float], Optional[float]]]
    ) -> "IndexCatalog":
        """Return a copy with ``(weight, baseline)`` overrides applied; None keeps the current value."""

        updated: Dict[IndexId, IndexSpec] = dict(self.indices)
        for index_id, (weight, baseline) in overrides.items():
            if index_id not in updated:
                raise CatalogError(f"override for index not in catalog: {index_id.value}")
            spec = updated[index_id]
            spec = replace(
                spec,
                weight=spec.weight if weight is None else float(weight),
                baseline=spec.baseline if baseline is None else float(baseline),
            )
            _validate_spec(spec)
            updated[index_id] = spec
        return IndexCatalog(version=f"{self.version}+overrides", indices=updated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "indices": {
                s.index_id.value: {
                    "category": s.category.value,
                    "weight": s.weight,
                    "baseline": s.baseline,
                }
                for s in self.indices.values()
            },
        }


_DEFAULT_REGISTRY_PATH = Path(__file__).with_name("index_catalog.json")


def _resolve_registry_path(path: str | os.PathLike[str] | None) -> Path:
    if path is not None:
        return Path(path)
    override = os.getenv("INDEX_CATALOG_PATH")
    if override:
        return Path(override)
    return _DEFAULT_REGISTRY_PATH


@lru_cache(maxsize=None)
def _load_registry(path_str: str) -> Dict[str, Any]:
    path = Path(path_str)
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, Mapping):
        raise CatalogError("index catalog must be a mapping")
    return dict(data)


def _validate_spec(spec: IndexSpec) -> None:
    if spec.weight <= 0:
        raise CatalogError(f"{spec.index_id.value}: weight must be positive")
    if spec.category in BASELINE_CATEGORIES and (spec.baseline is None or spec.baseline <= 0):
        raise CatalogError(f"{spec.index_id.value}: {spec.category.value} modifier needs a positive baseline")


def _parse_spec(name: str, record: Any) -> IndexSpec:
    if not isinstance(record, Mapping):
        raise CatalogError(f"invalid catalog entry for {name}")
    for key in ("category", "weight"):
        if key not in record:
            raise MissingCatalogField(f"indices.{name}.{key}")

    index_id = IndexId.parse(name)
    try:
        category = IndexCategory(record["category"])
    except ValueError:
        raise CatalogError(f"{name}: unknown category {record['category']!r}") from None

    baseline = record.get("baseline")
    if category in BASELINE_CATEGORIES and baseline is None:
        raise MissingCatalogField(f"indices.{name}.baseline")

    spec = IndexSpec(
        index_id=index_id,
        category=category,
        weight=float(record["weight"]),
        baseline=None if baseline is None else float(baseline),
    )
    _validate_spec(spec)
    return spec


def load_index_catalog(registry_path: str | os.PathLike[str] | None = None) -> IndexCatalog:
    """Load and validate the index catalog from its JSON registry."""

    path = _resolve_registry_path(registry_path)
    registry = _load_registry(str(path))

    if "indices" not in registry:
        raise MissingCatalogField("indices")
    raw = registry["indices"]
    if not isinstance(raw, Mapping) or not raw:
        raise CatalogError("catalog must declare at least one index")

    indices = {}
    for name, record in raw.items():
        spec = _parse_spec(str(name), record)
        indices[spec.index_id] = spec

    if not any(s.is_core for s in indices.values()):
        raise CatalogError("catalog must declare at least one core index")
    if sum(1 for s in indices.values() if s.category is IndexCategory.INTRA_ASIA) > 1:
        raise CatalogError("catalog may declare at most one intra_asia index")

    catalog = IndexCatalog(version=str(registry.get("version", "unversioned")), indices=indices)
    logger.info(f"Loaded index catalog {catalog.version} from {path} ({len(indices)} indices)")
    return catalog


def catalog_overrides_from_db(db: Session) -> Dict[IndexId, Tuple[Optional[float], Optional[float]]]:
    """Read ``index_config`` rows into an override mapping for ``IndexCatalog.with_overrides``."""

    rows = db.execute(select(IndexConfig)).scalars().all()
    overrides: Dict[IndexId, Tuple[Optional[float], Optional[float]]] = {}
    for row in rows:
        index_id = IndexId.parse(row.index_name)
        weight = float(row.weight) if row.weight is not None else None
        baseline = float(row.baseline_value) if row.baseline_value is not None else None
        overrides[index_id] = (weight, baseline)
    return overrides
