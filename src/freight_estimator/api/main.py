from __future__ import annotations

import asyncio
import datetime
import logging
import os
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..connectors import page_search
from ..connectors.index_sources import CachedIndexAdapter, IndexSourceRegistry
from ..connectors.index_workbook import WorkbookError, override_from_row, parse_rows
from ..connectors.page_search import PageSearchLookup
from ..db import SessionLocal, init_db
from ..history import HistoryRecorder
from ..models import CalculationHistory, ContainerTypeRow, FreightIndexValue, IndexConfig, Port
from ..rules.containers import ContainerType
from ..rules.fuel_surcharge import FuelSurchargeCalculator
from ..rules.index_catalog import (
    CatalogError,
    IndexCatalog,
    IndexId,
    catalog_overrides_from_db,
    load_index_catalog,
)
from ..rules.rate_engine import EngineConfig, RateAggregationEngine
from ..rules.regions import RegionResolver
from ..rules.seasonality import SeasonalityProvider, refresh_if_stale
from ..settings import settings

# ---------------- Logging ----------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("freight-api")

API_VERSION = "1.0.0"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# ---------- App ----------
app = FastAPI(
    title="Ocean Freight Rate Estimator",
    version=API_VERSION,
    description="Container freight estimates blended from published freight indices",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

# ----- CORS -----
_allow = os.getenv("ALLOW_ORIGINS", "*")
allow_origins: List[str] = [o.strip() for o in _allow.split(",") if o.strip()] or ["*"]
allow_all = allow_origins == ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    # Browsers disallow credentials with "*"
    allow_credentials=not allow_all,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- Wiring -----
def _active_catalog() -> IndexCatalog:
    catalog = load_index_catalog(settings.index_catalog_path)
    try:
        with SessionLocal() as db:
            overrides = catalog_overrides_from_db(db)
    except SQLAlchemyError:
        logger.warning("index_config unavailable; using catalog defaults")
        return catalog
    return catalog.with_overrides(overrides) if overrides else catalog


@lru_cache(maxsize=1)
def get_engine() -> RateAggregationEngine:
    catalog = _active_catalog()
    fallback = None
    if settings.page_search_enabled and settings.page_search_url_list:
        fallback = PageSearchLookup(
            settings.page_search_url_list,
            timeout=settings.request_timeout,
            cache_ttl=settings.page_cache_ttl,
        )
    sources = IndexSourceRegistry.for_catalog(
        catalog,
        CachedIndexAdapter(SessionLocal),
        fallback=fallback,
        timeout=settings.index_fetch_timeout,
    )
    sources.validate(catalog)
    regions = RegionResolver(SessionLocal)
    return RateAggregationEngine(
        sources=sources,
        regions=regions,
        seasonality=SeasonalityProvider(SessionLocal),
        fuel=FuelSurchargeCalculator(SessionLocal),
        config=EngineConfig.from_settings(catalog, settings),
    )


@lru_cache(maxsize=1)
def get_recorder() -> HistoryRecorder:
    return HistoryRecorder(SessionLocal)


# ----- Schemas -----
class CalculateRequest(BaseModel):
    origin_port: str = Field(..., alias="originPort")
    destination_port: str = Field(..., alias="destinationPort")
    container_type: str = Field(..., alias="containerType")
    weight: int = 20000
    debug: bool = False
    user_email: Optional[str] = Field(default=None, alias="userEmail")

    model_config = {"populate_by_name": True}

    @field_validator("user_email")
    @classmethod
    def _check_email(cls, v: Optional[str]) -> Optional[str]:
        if v and not _EMAIL_RE.match(v):
            raise ValueError("Invalid email format")
        return v or None


class IndexOverride(BaseModel):
    index_name: str
    weight: Optional[float] = Field(default=None, gt=0)
    baseline_value: Optional[float] = Field(default=None, gt=0)


class PortIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)
    name: str = Field(..., min_length=1, max_length=120)
    country: Optional[str] = None
    region: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("port code is required")
        return v


@app.on_event("startup")
def _startup():
    """Initialize database and refresh seasonality factors on startup."""
    try:
        init_db()
        logger.info("Startup complete, DB initialized.")
    except Exception:
        logger.exception("DB init failed during startup; continuing without blocking app.")
        return

    try:
        with SessionLocal() as db:
            refresh_if_stale(db)
    except SQLAlchemyError:
        logger.exception("Seasonality refresh failed; continuing with stored factors.")


# ----- System -----
@app.get("/health", tags=["System"])
def health() -> Dict[str, Any]:
    db_ok = True
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1")).scalar()
    except SQLAlchemyError:
        db_ok = False
    return {
        "ok": True,
        "version": API_VERSION,
        "db_ok": db_ok,
        "page_search_enabled": settings.page_search_enabled,
    }


# ----- Reference data -----
def _port_dict(p: Port) -> Dict[str, Any]:
    return {
        "code": p.code,
        "name": p.name,
        "country": p.country,
        "region": p.region,
        "latitude": float(p.latitude) if p.latitude is not None else None,
        "longitude": float(p.longitude) if p.longitude is not None else None,
    }


@app.get("/ports", tags=["Ports"])
def list_ports() -> List[Dict[str, Any]]:
    try:
        with SessionLocal() as db:
            rows = db.execute(select(Port).order_by(Port.name)).scalars().all()
            return [_port_dict(p) for p in rows]
    except SQLAlchemyError:
        logger.exception("Failed to list ports")
        raise HTTPException(status_code=500, detail="ports query failed")


@app.get("/container-types", tags=["Ports"])
def list_container_types() -> List[Dict[str, Any]]:
    descriptions: Dict[str, Optional[str]] = {}
    try:
        with SessionLocal() as db:
            descriptions = {r.code: r.description for r in db.execute(select(ContainerTypeRow)).scalars()}
    except SQLAlchemyError:
        logger.warning("container_types unavailable; listing built-in types only")
    return [{"code": c.value, "description": descriptions.get(c.value)} for c in ContainerType]


@app.get("/indices", tags=["Indices"])
def list_indices(engine: RateAggregationEngine = Depends(get_engine)) -> Dict[str, Any]:
    catalog = engine.config.catalog.to_dict()
    latest: Dict[str, Any] = {}
    try:
        with SessionLocal() as db:
            for name in catalog["indices"]:
                row = db.execute(
                    select(FreightIndexValue)
                    .where(FreightIndexValue.index_name == name)
                    .order_by(FreightIndexValue.index_date.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if row is not None:
                    latest[name] = {
                        "value": float(row.current_index),
                        "change": float(row.change) if row.change is not None else None,
                        "date": row.index_date.isoformat(),
                        "source": row.source,
                    }
    except SQLAlchemyError:
        logger.warning("freight_index_values unavailable; returning catalog only")
    catalog["latest"] = latest
    return catalog


# ----- Calculation -----
@app.post("/api/calculate", tags=["Estimates"])
def calculate(
    req: CalculateRequest,
    engine: RateAggregationEngine = Depends(get_engine),
    recorder: HistoryRecorder = Depends(get_recorder),
) -> Dict[str, Any]:
    try:
        # Runs on a threadpool worker; the engine gets its own loop there
        result = asyncio.run(
            engine.compute(
                req.origin_port,
                req.destination_port,
                req.container_type,
                weight=req.weight,
                debug=req.debug,
            )
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    payload = result.to_dict()
    try:
        payload["calculation_id"] = recorder.record(
            req.origin_port.strip().upper(),
            req.destination_port.strip().upper(),
            ContainerType.parse(req.container_type).value,
            req.weight,
            result,
            user_email=req.user_email,
        )
    except SQLAlchemyError:
        logger.exception("Failed to record calculation history")
    return payload


# ----- Admin -----
@app.get("/api/admin/history", tags=["Admin"])
def recent_history(limit: int = Query(50, ge=1, le=500)) -> List[Dict[str, Any]]:
    with SessionLocal() as db:
        rows = db.execute(
            select(CalculationHistory).order_by(CalculationHistory.created_at.desc()).limit(limit)
        ).scalars().all()
        return [
            {
                "id": r.id,
                "created_at": r.created_at.isoformat(),
                "origin": r.origin,
                "destination": r.destination,
                "container_type": r.container_type,
                "weight": r.weight,
                "rate": float(r.rate),
                "final_rate": float(r.final_rate),
                "min_rate": float(r.min_rate),
                "max_rate": float(r.max_rate),
                "reliability": float(r.reliability),
                "source_count": r.source_count,
                "sources_used": r.sources_used or [],
                "user_email": r.user_email,
            }
            for r in rows
        ]


def _store_override(
    db: Session,
    index_id: IndexId,
    weight: Optional[float],
    baseline: Optional[float],
    merge: bool = False,
) -> bool:
    """Upsert an ``index_config`` row; with ``merge`` a None keeps the stored value. Returns True on insert."""
    row = db.execute(select(IndexConfig).where(IndexConfig.index_name == index_id.value)).scalar_one_or_none()
    inserted = row is None
    if inserted:
        row = IndexConfig(index_name=index_id.value)
        db.add(row)
    if weight is not None or not merge:
        row.weight = weight
    if baseline is not None or not merge:
        row.baseline_value = baseline
    row.last_updated = datetime.datetime.utcnow()
    return inserted


@app.post("/api/admin/indices", tags=["Admin"])
def upsert_index_override(body: IndexOverride) -> Dict[str, Any]:
    try:
        index_id = IndexId.parse(body.index_name)
        _active_catalog().with_overrides({index_id: (body.weight, body.baseline_value)})
    except CatalogError as e:
        raise HTTPException(status_code=400, detail=str(e))

    with SessionLocal() as db:
        _store_override(db, index_id, body.weight, body.baseline_value)
        db.commit()

    get_engine.cache_clear()
    logger.info(f"Index override stored for {index_id.value}")
    return {"status": "ok", "index_name": index_id.value}


@app.post("/api/admin/indices/upload", tags=["Admin"])
def upload_index_overrides(indices_file: UploadFile = File(..., alias="indicesFile")) -> Dict[str, Any]:
    """Bulk weight/baseline overrides from an XLSX sheet (Index Name, Weight, Baseline Value)."""
    try:
        records = parse_rows(indices_file.file.read())
    except WorkbookError as e:
        raise HTTPException(status_code=400, detail=str(e))

    catalog = _active_catalog()
    accepted: List[Tuple[IndexId, Optional[float], Optional[float]]] = []
    skipped: List[str] = []
    for n, raw in enumerate(records, start=2):
        try:
            index_id, weight, baseline = override_from_row(raw)
            catalog = catalog.with_overrides({index_id: (weight, baseline)})
        except ValueError as e:
            logger.warning(f"Skipping row {n} of index upload: {e}")
            skipped.append(f"row {n}: {e}")
            continue
        accepted.append((index_id, weight, baseline))

    inserted = updated = 0
    with SessionLocal() as db:
        for index_id, weight, baseline in accepted:
            if _store_override(db, index_id, weight, baseline, merge=True):
                inserted += 1
            else:
                updated += 1
        db.commit()

    if accepted:
        get_engine.cache_clear()
    logger.info(f"Index upload: inserted={inserted} updated={updated} skipped={len(skipped)}")
    return {"inserted": inserted, "updated": updated, "skipped": skipped}


@app.delete("/api/admin/indices/{index_name}", tags=["Admin"])
def delete_index_override(index_name: str) -> Dict[str, str]:
    try:
        index_id = IndexId.parse(index_name)
    except CatalogError as e:
        raise HTTPException(status_code=400, detail=str(e))

    with SessionLocal() as db:
        row = db.execute(select(IndexConfig).where(IndexConfig.index_name == index_id.value)).scalar_one_or_none()
        if row is None:
            raise HTTPException(status_code=404, detail=f"No override stored for {index_id.value}")
        db.delete(row)
        db.commit()

    get_engine.cache_clear()
    logger.info(f"Index override removed for {index_id.value}")
    return {"status": "ok", "index_name": index_id.value}


@app.post("/api/admin/ports", tags=["Admin"], status_code=201)
def upsert_port(body: PortIn) -> Dict[str, Any]:
    with SessionLocal() as db:
        port = db.execute(select(Port).where(Port.code == body.code)).scalar_one_or_none()
        if port is None:
            port = Port(code=body.code)
            db.add(port)
        port.name = body.name
        port.country = body.country
        port.region = body.region
        port.latitude = body.latitude
        port.longitude = body.longitude
        db.commit()
        out = _port_dict(port)

    # region lookups are cached inside the engine
    get_engine.cache_clear()
    return out


@app.delete("/api/admin/ports/{code}", tags=["Admin"])
def delete_port(code: str) -> Dict[str, str]:
    code = code.strip().upper()
    with SessionLocal() as db:
        port = db.execute(select(Port).where(Port.code == code)).scalar_one_or_none()
        if port is None:
            raise HTTPException(status_code=404, detail=f"Port {code} not found")
        db.delete(port)
        db.commit()

    get_engine.cache_clear()
    return {"status": "ok", "code": code}


@app.post("/api/admin/seasonality/refresh", tags=["Admin"])
def refresh_seasonality() -> Dict[str, Any]:
    with SessionLocal() as db:
        refreshed = refresh_if_stale(db, force=True)
    return {"status": "ok", "refreshed": refreshed}


@app.post("/admin/cache/clear", tags=["Admin"])
def clear_data_cache() -> Dict[str, str]:
    page_search.clear_cache()
    return {"message": "Cache cleared successfully"}


# ----- Dev entrypoint -----
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
