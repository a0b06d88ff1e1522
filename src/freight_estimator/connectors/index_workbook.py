# src/freight_estimator/connectors/index_workbook.py
from __future__ import annotations

import io
import zipfile
from typing import Any, Dict, List, Optional, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from ..rules.index_catalog import IndexId

# Header spellings accepted for each column; the first sheet is read.
NAME_HEADERS = ("Index Name", "index_name")
WEIGHT_HEADERS = ("Weight", "weight")
BASELINE_HEADERS = ("Baseline Value", "baseline_value")


class WorkbookError(ValueError):
    """The upload is not a readable XLSX workbook."""


def parse_rows(data: bytes) -> List[Dict[str, Any]]:
    """Parse the first sheet of an XLSX into dict records keyed by header."""
    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
        raise WorkbookError(f"not an XLSX workbook: {e}") from e
    ws = wb.active

    rows = ws.iter_rows(values_only=True)
    header_row = next(rows, None)
    if header_row is None:
        return []
    headers = [str(h).strip() if h is not None else "" for h in header_row]

    records: List[Dict[str, Any]] = []
    for row in rows:
        if all(v is None for v in row):
            continue
        records.append({h: v for h, v in zip(headers, row) if h})
    return records


def _pick(raw: Dict[str, Any], names: Tuple[str, ...]) -> Any:
    for name in names:
        v = raw.get(name)
        if v is not None and str(v).strip() != "":
            return v
    return None


def _number(v: Any, column: str) -> Optional[float]:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        raise ValueError(f"{column} is not a number: {v!r}") from None


def override_from_row(raw: Dict[str, Any]) -> Tuple[IndexId, Optional[float], Optional[float]]:
    """
    Map one sheet row to ``(index_id, weight, baseline)``.
    Blank weight or baseline cells leave the catalog value in place.
    """
    name = _pick(raw, NAME_HEADERS)
    if name is None:
        raise ValueError("row has no index name")
    index_id = IndexId.parse(str(name).strip())
    weight = _number(_pick(raw, WEIGHT_HEADERS), "weight")
    baseline = _number(_pick(raw, BASELINE_HEADERS), "baseline value")
    if weight is None and baseline is None:
        raise ValueError(f"{index_id.value}: neither weight nor baseline given")
    return index_id, weight, baseline
