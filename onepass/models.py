from sqlalchemy import Column, Integer, String, Boolean, Enum, DateTime, Text, ForeignKey
from onepass.database import Base
import enum

class Role(str, enum.Enum):
    Member = "Member"
    Staff = "Staff"
    Admin = "Admin"
    Master = "Master"
    Guest = "Guest"

ADMIN_ROLES = {Role.Admin, Role.Master}

class MemberStatus(str, enum.Enum):
    Active = "Active"
    Late = "Late"
    Suspended = "Suspended"
    Blocked = "Blocked"
    Locked = "Locked"  # 재정 잠금 (출입은 허용)

DENIED_STATUSES = {MemberStatus.Blocked, MemberStatus.Suspended}

class VisitorStatus(str, enum.Enum):
    CheckedIn = "CheckedIn"
    CheckedOut = "CheckedOut"
    Expired = "Expired"

class TransactionType(str, enum.Enum):
    Credit = "Credit"
    Debit = "Debit"
    Fine = "Fine"
    Award = "Award"

class AccessOutcome(str, enum.Enum):
    Granted = "Granted"
    Denied = "Denied"

class WithdrawalStatus(str, enum.Enum):
    Pending = "Pending"
    Approved = "Approved"
    Rejected = "Rejected"


class Member(Base):
    __tablename__ = "members"

    id = Column(String, primary_key=True, index=True)
    organization_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    password = Column(String, nullable=True)  # 없으면 기본 비밀번호로 첫 로그인
    role = Column(Enum(Role), default=Role.Member, nullable=False)
    status = Column(Enum(MemberStatus), default=MemberStatus.Active, nullable=False)
    status_before_late = Column(Enum(MemberStatus), nullable=True)  # 일일 마감 때 되돌릴 상태
    photo_url = Column(String, default="")
    wallet_balance = Column(Integer, default=0, nullable=False)
    outstanding_fines = Column(Integer, default=0, nullable=False)
    reward_points = Column(Integer, default=0, nullable=False)
    last_dashboard_view = Column(DateTime, nullable=True)
    session_progress = Column(Integer, default=0, nullable=False)


class MemberArchive(Base):
    """동기화에서 빠진 회원의 재정 정보 보관 (재등장 시 복원)"""
    __tablename__ = "member_archive"

    id = Column(String, primary_key=True, index=True)
    organization_id = Column(String, index=True, nullable=False)
    name = Column(String)
    wallet_balance = Column(Integer, default=0, nullable=False)
    outstanding_fines = Column(Integer, default=0, nullable=False)
    reward_points = Column(Integer, default=0, nullable=False)
    archived_at = Column(DateTime, nullable=False)


class Visitor(Base):
    __tablename__ = "visitors"

    id = Column(String, primary_key=True, index=True)
    organization_id = Column(String, index=True, nullable=False)
    host_id = Column(String, ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    name = Column(String, nullable=False)
    purpose = Column(String, default="")
    checked_in_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    status = Column(Enum(VisitorStatus), default=VisitorStatus.CheckedIn, nullable=False)


class Transaction(Base):
    # 원장 항목은 생성 후 수정하지 않는다. member_id는 회원이 보관 처리되어도 남는다.
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(String, index=True, nullable=False)
    type = Column(Enum(TransactionType), nullable=False)
    amount = Column(Integer, nullable=False)
    description = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False)
    reference = Column(String, nullable=True)


class AccessLog(Base):
    __tablename__ = "access_logs"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String, index=True, nullable=True)
    actor_id = Column(String, index=True, nullable=False)
    actor_type = Column(String, nullable=False)  # member / visitor / unknown
    action = Column(String, nullable=False)
    outcome = Column(Enum(AccessOutcome), nullable=False)
    created_at = Column(DateTime, nullable=False)
    device = Column(String, nullable=True)
    notes = Column(Text, default="")


class WithdrawalRequest(Base):
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    status = Column(Enum(WithdrawalStatus), default=WithdrawalStatus.Pending, nullable=False)
    created_at = Column(DateTime, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(String, nullable=True)


class SystemConfig(Base):
    __tablename__ = "system_config"

    id = Column(Integer, primary_key=True)
    resumption_time = Column(String, default="08:30", nullable=False)
    late_fine_amount = Column(Integer, default=5000, nullable=False)
    auto_suspend_threshold = Column(Integer, default=0, nullable=False)  # 0 = 사용 안 함
    wallet_unlock_minutes = Column(Integer, default=60, nullable=False)
    maintenance_mode = Column(Boolean, default=False, nullable=False)
    sheet_url = Column(String, nullable=True)
    sheet_api_key = Column(String, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)


def match_enum(enum_cls, value):
    """대소문자 구분 없이 enum 값 매칭. 실패 시 None"""
    if isinstance(value, enum_cls):
        return value
    text = str(value or "").strip().lower()
    for item in enum_cls:
        if item.value.lower() == text:
            return item
    return None
