from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from onepass.config import DATABASE_URL


def make_engine(url: str):
    # SQLite는 요청 스레드와 생성 스레드가 달라도 연결을 공유하도록 허용
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
    )


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
