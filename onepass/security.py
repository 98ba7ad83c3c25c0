import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from onepass import config, store
from onepass.database import get_db
from onepass.models import ADMIN_ROLES, Member, MemberStatus, Role

logger = logging.getLogger("onepass.security")

# 비밀번호 해싱 설정
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password):
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def master_member() -> Member:
    # 글로벌 컨트롤러는 DB에 저장하지 않는다
    return Member(
        id=config.MASTER_ID,
        organization_id=config.DEFAULT_ORGANIZATION,
        name="Global Controller",
        role=Role.Master,
        status=MemberStatus.Active,
        photo_url="",
        wallet_balance=0,
        outstanding_fines=0,
        reward_points=0,
        session_progress=0,
    )


def authenticate(db: Session, member_id: str, password: str):
    """(회원, None) 또는 (None, 오류 메시지)"""
    member_id = (member_id or "").strip()
    password = password or ""
    if config.MASTER_PASSWORD and member_id == config.MASTER_ID:
        if secrets.compare_digest(password, config.MASTER_PASSWORD):
            return master_member(), None
        return None, "Invalid credentials."

    member = store.get_member(db, member_id)
    if member is None:
        return None, "Identity not found."
    if member.password is None:
        # 비밀번호를 설정한 적 없는 회원은 기본 비밀번호로 첫 로그인 후 해시 저장
        if not secrets.compare_digest(password, config.DEFAULT_MEMBER_PASSWORD):
            return None, "Invalid credentials."
        with store.unit_of_work(db, member.organization_id):
            member.password = get_password_hash(password)
        return member, None
    if not verify_password(password, member.password):
        logger.info("Failed login for %s", member_id)
        return None, "Invalid credentials."
    return member, None


def issue_token(member: Member) -> str:
    return create_access_token(
        data={"sub": member.id},
        expires_delta=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def change_password(db: Session, member: Member, current_password: str, new_password: str):
    member_ok, _ = authenticate(db, member.id, current_password)
    if member_ok is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Incorrect current password")
    if len(new_password or "") < 4:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Password must be at least 4 characters")
    with store.unit_of_work(db, member.organization_id):
        member.password = get_password_hash(new_password)


# --- 인증 관련 의존성 함수 ---

async def get_current_user(token: str = Depends(oauth2_scheme), db_session: Session = Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        member_id: str = payload.get("sub")
        if member_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    if config.MASTER_PASSWORD and member_id == config.MASTER_ID:
        return master_member()
    user = store.get_member(db_session, member_id)
    if user is None:
        raise credentials_exception
    return user

# [보안] 관리자 권한 의존성 주입
def get_current_admin(current_user: Member = Depends(get_current_user)):
    if current_user.role not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required."
        )
    return current_user

# 스캔 데스크 (Staff 이상)
def get_current_staff(current_user: Member = Depends(get_current_user)):
    if current_user.role not in ADMIN_ROLES | {Role.Staff}:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff privileges required."
        )
    return current_user
