import json
from decimal import Decimal

import pytest

from freight_estimator.models import IndexConfig
from freight_estimator.rules.index_catalog import (
    CatalogError,
    IndexCategory,
    IndexId,
    MissingCatalogField,
    catalog_overrides_from_db,
    load_index_catalog,
)


def _write_registry(tmp_path, indices, name="catalog.json"):
    path = tmp_path / name
    path.write_text(json.dumps({"version": "test", "indices": indices}))
    return path


def test_default_catalog_matches_published_weights():
    catalog = load_index_catalog()

    assert len(catalog.indices) == 9
    assert [s.index_id for s in catalog.core] == [IndexId.SCFI, IndexId.FBX, IndexId.WCI, IndexId.CCFI]
    assert catalog.spec(IndexId.SCFI).weight == 1.2
    assert catalog.spec(IndexId.CCFI).weight == 1.0

    harpex = catalog.spec(IndexId.HARPEX)
    assert harpex.category is IndexCategory.CHARTER
    assert harpex.baseline == 1000
    assert catalog.spec(IndexId.CTS).baseline == 100
    assert catalog.spec(IndexId.ISTFIX).category is IndexCategory.INTRA_ASIA
    assert catalog.spec(IndexId.ISTFIX).weight == 1.5


def test_missing_weight_is_reported_with_its_path(tmp_path):
    path = _write_registry(tmp_path, {"SCFI": {"category": "core"}})

    with pytest.raises(MissingCatalogField) as excinfo:
        load_index_catalog(path)

    assert excinfo.value.field_path == "indices.SCFI.weight"


def test_modifier_without_baseline_is_rejected(tmp_path):
    path = _write_registry(
        tmp_path,
        {
            "SCFI": {"category": "core", "weight": 1.2},
            "BDI": {"category": "demand", "weight": 0.1},
        },
    )

    with pytest.raises(MissingCatalogField):
        load_index_catalog(path)


def test_unknown_index_name_is_rejected(tmp_path):
    path = _write_registry(
        tmp_path,
        {
            "SCFI": {"category": "core", "weight": 1.2},
            "XYZI": {"category": "core", "weight": 1.0},
        },
    )

    with pytest.raises(CatalogError):
        load_index_catalog(path)


def test_non_positive_weight_is_rejected(tmp_path):
    path = _write_registry(tmp_path, {"SCFI": {"category": "core", "weight": 0}})

    with pytest.raises(CatalogError):
        load_index_catalog(path)


def test_catalog_without_core_index_is_rejected(tmp_path):
    path = _write_registry(tmp_path, {"BDI": {"category": "demand", "weight": 0.1, "baseline": 1500}})

    with pytest.raises(CatalogError):
        load_index_catalog(path)


def test_registry_path_can_come_from_environment(tmp_path, monkeypatch):
    path = _write_registry(tmp_path, {"FBX": {"category": "core", "weight": 2.0}}, name="env_catalog.json")
    monkeypatch.setenv("INDEX_CATALOG_PATH", str(path))

    catalog = load_index_catalog()

    assert catalog.version == "test"
    assert catalog.index_ids == [IndexId.FBX]
    assert catalog.spec(IndexId.FBX).weight == 2.0


def test_overrides_replace_only_given_values():
    catalog = load_index_catalog()

    updated = catalog.with_overrides({IndexId.SCFI: (1.5, None), IndexId.BDI: (None, 2000.0)})

    assert updated.spec(IndexId.SCFI).weight == 1.5
    assert updated.spec(IndexId.BDI).weight == 0.1
    assert updated.spec(IndexId.BDI).baseline == 2000.0
    # base catalog is untouched
    assert catalog.spec(IndexId.SCFI).weight == 1.2


def test_override_for_index_outside_catalog_is_rejected(tmp_path):
    catalog = load_index_catalog(_write_registry(tmp_path, {"SCFI": {"category": "core", "weight": 1.2}}))

    with pytest.raises(CatalogError):
        catalog.with_overrides({IndexId.FBX: (1.0, None)})


def test_overrides_are_read_from_index_config(session_factory):
    with session_factory() as db:
        db.add(IndexConfig(index_name="WCI", weight=Decimal("1.3000")))
        db.add(IndexConfig(index_name="Harpex", weight=None, baseline_value=Decimal("1200")))
        db.commit()

        overrides = catalog_overrides_from_db(db)

    assert overrides == {IndexId.WCI: (1.3, None), IndexId.HARPEX: (None, 1200.0)}
    catalog = load_index_catalog().with_overrides(overrides)
    assert catalog.spec(IndexId.WCI).weight == 1.3
    assert catalog.spec(IndexId.HARPEX).baseline == 1200.0


def test_unknown_index_in_index_config_is_rejected(session_factory):
    with session_factory() as db:
        db.add(IndexConfig(index_name="NOPE", weight=Decimal("1")))
        db.commit()

        with pytest.raises(CatalogError):
            catalog_overrides_from_db(db)
