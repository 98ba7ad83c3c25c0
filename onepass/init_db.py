from sqlalchemy.orm import Session

from onepass import config, store
from onepass.database import Base, SessionLocal, engine
from onepass.models import Member, MemberStatus, Role
from onepass.security import get_password_hash


def seed_accounts(db: Session):
    messages = []

    with store.unit_of_work(db, config.DEFAULT_ORGANIZATION):
        # 1. 관리자 계정 (VG-001 / admin1234)
        if store.get_member(db, "VG-001") is None:
            db.add(Member(
                id="VG-001",
                organization_id=config.DEFAULT_ORGANIZATION,
                name="Hub Administrator",
                password=get_password_hash("admin1234"),
                role=Role.Admin,
                status=MemberStatus.Active,
                photo_url="",
                wallet_balance=0,
                outstanding_fines=0,
                reward_points=0,
                session_progress=0,
            ))
            messages.append("Admin account (VG-001) created")

        # 2. 테스트 계정 (VG-002 / 기본 비밀번호)
        if store.get_member(db, "VG-002") is None:
            db.add(Member(
                id="VG-002",
                organization_id=config.DEFAULT_ORGANIZATION,
                name="Test Member",
                role=Role.Member,
                status=MemberStatus.Active,
                photo_url="",
                wallet_balance=0,
                outstanding_fines=0,
                reward_points=0,
                session_progress=0,
            ))
            messages.append("Test account (VG-002) created")

        store.get_config(db)

    if not messages:
        messages.append("All accounts already exist.")
    return messages


def init_db_data():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        print("--- Seeding OnePass accounts ---")
        for message in seed_accounts(db):
            print(message)
        print("--- Done ---")
    finally:
        db.close()

if __name__ == "__main__":
    init_db_data()
