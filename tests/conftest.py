import os

# onepass.config는 임포트 시점에 환경 변수를 읽으므로 가장 먼저 설정
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["MASTER_ID"] = "VNG_MASTER"
os.environ["MASTER_PASSWORD"] = "master-pass"
os.environ["DEVICE_KEY"] = ""
os.environ["GEMINI_API_KEY"] = ""
os.environ["INIT_DB_SECRET"] = "local-init-secret"
os.environ["SCAN_PRIORITY"] = "member"

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from onepass import ledger, store
from onepass import models  # noqa: F401  (테이블 등록)
from onepass.database import Base, get_db, make_engine, make_session_factory
from onepass.models import Role, TransactionType

ON_TIME = datetime(2026, 3, 2, 8, 0)
LATE = datetime(2026, 3, 2, 9, 15)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_member(db):
    def _make(member_id, name=None, role=Role.Member, status="Active", wallet=0, fines=0, points=0,
              organization_id="CAC_01"):
        store.create_member(db, member_id, name or f"Member {member_id}", organization_id,
                            role=role, status=status)
        # 잔액은 원장을 통해서만 만든다
        if wallet + fines > 0:
            ledger.post_transaction(db, member_id, TransactionType.Credit, wallet + fines, "Opening balance",
                                    now=ON_TIME)
        if fines:
            ledger.post_transaction(db, member_id, TransactionType.Fine, -fines, "Opening fine", now=ON_TIME)
        if points:
            store.adjust_points(db, member_id, points)
        return store.get_member(db, member_id)
    return _make


@pytest.fixture
def client(session_factory):
    from onepass.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def master_headers(client):
    res = client.post("/token", data={"username": "VNG_MASTER", "password": "master-pass"})
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['access_token']}"}
