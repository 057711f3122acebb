import os
import tempfile
from pathlib import Path

# the engine is built at import time, so the test DB path must be set first
_TMP_DIR = Path(tempfile.mkdtemp(prefix="cabinet_test_"))
os.environ["CABINET_DB_PATH"] = str(_TMP_DIR / "test_cabinet.db")

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient


class RecordingDispatcher:
    def __init__(self):
        self.intents = []

    def dispatch(self, intent):
        self.intents.append(intent)

    def kinds(self):
        return [i.kind for i in self.intents]


@pytest.fixture(scope="session")
def app_module():
    import main

    return main


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def now():
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def client(app_module, dispatcher):
    from dependencies import get_db
    from db import SessionLocal

    # get_db を override（テスト用SessionLocalを使う）
    def _get_db_override():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    original_dispatcher = app_module.app.state.dispatcher
    original_settings = app_module.app.state.settings
    app_module.app.state.dispatcher = dispatcher
    app_module.app.dependency_overrides[get_db] = _get_db_override
    with TestClient(app_module.app) as c:
        yield c
    app_module.app.dependency_overrides.clear()
    app_module.app.state.dispatcher = original_dispatcher
    app_module.app.state.settings = original_settings


@pytest.fixture()
def db_session(app_module):
    from db import SessionLocal

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def clean_db(app_module, db_session):
    # 各テスト前にテーブルを全消し（順序注意：子テーブルから）
    from sqlalchemy import delete
    from orm import (
        ActivityLogORM,
        BorrowRecordORM,
        EquipmentORM,
        InventoryLineORM,
        RequestItemORM,
        RequestORM,
    )

    db_session.execute(delete(ActivityLogORM))
    db_session.execute(delete(BorrowRecordORM))
    db_session.execute(delete(RequestItemORM))
    db_session.execute(delete(RequestORM))
    db_session.execute(delete(InventoryLineORM))
    db_session.execute(delete(EquipmentORM))
    db_session.commit()
    yield


@pytest.fixture()
def make_line(db_session):
    import inventory
    from models import InventoryLineIn

    def _make(name, quantity=1, *, city_id="haifa", is_consumable=False, equipment_status="working"):
        result = inventory.create_line(
            db_session,
            InventoryLineIn(
                city_id=city_id,
                equipment_name=name,
                quantity=quantity,
                is_consumable=is_consumable,
                equipment_status=equipment_status,
            ),
        )
        assert result.ok, result
        return result.value

    return _make
