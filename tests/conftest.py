from __future__ import annotations

from pathlib import Path

import pytest

import utils


@pytest.fixture()
def store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the store at a throwaway database under tmp_path."""
    monkeypatch.delenv("WORKSHOP_ADMIN_JOB_CODE", raising=False)
    monkeypatch.delenv("WORKSHOP_ADMIN_NAME", raising=False)
    monkeypatch.setattr(utils, "DATA_DIR", tmp_path)
    monkeypatch.setattr(utils, "MAIN_DB_FILE", tmp_path / "main_data.db")
    assert utils.ensure_main_database()
    return utils


@pytest.fixture()
def seeded(store):
    store.save_staff("wrk001", "Tom Baker", role="worker")
    store.save_staff("SUP001", "Grace Mwangi", role="supervisor")
    store.save_tool("SM1001", "Cordless Drill", brand="Makita", model="DHP482")
    store.save_tool("SM1002", "Angle Grinder", brand="Bosch")
    store.save_consumable(
        "CN2001",
        "Wood Glue",
        category="Adhesive",
        unit="liters",
        current_quantity=4.5,
        min_quantity=2,
        max_quantity=20,
        unit_price=12.0,
    )
    store.save_consumable(
        "CN2002",
        "Masking Tape",
        category="Tape",
        unit="meters",
        current_quantity=40,
        min_quantity=25,
        max_quantity=200,
    )
    return store
