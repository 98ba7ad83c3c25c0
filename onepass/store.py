"""
회원/설정/출입기록 저장소 접근 계층.

모든 변경은 unit_of_work 안에서 수행한다. 같은 조직의 변경은 하나의 락으로 직렬화되고,
가장 바깥쪽 작업 단위가 끝날 때 한 번에 커밋(실패 시 롤백)된다.
"""
import logging
import re
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime, time

from sqlalchemy.orm import Session

from onepass.errors import InvalidCommand, NotFound
from onepass.models import (
    AccessLog,
    AccessOutcome,
    Member,
    MemberArchive,
    MemberStatus,
    Role,
    SystemConfig,
    Visitor,
    VisitorStatus,
    match_enum,
)

logger = logging.getLogger("onepass.store")

_locks = {}
_locks_guard = threading.Lock()

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

CONFIG_DEFAULTS = {
    "resumption_time": "08:30",
    "late_fine_amount": 5000,
    "auto_suspend_threshold": 0,
    "wallet_unlock_minutes": 60,
    "maintenance_mode": False,
}


def _coerce(enum_cls, value):
    item = match_enum(enum_cls, value)
    if item is None:
        raise InvalidCommand(f"Invalid {enum_cls.__name__} '{value}'.")
    return item


def _lock_for(org_id):
    with _locks_guard:
        return _locks.setdefault(org_id or "", threading.RLock())


@contextmanager
def unit_of_work(db: Session, *org_ids):
    """
    org_ids의 락을 정렬된 순서로 모두 잡은 뒤 작업한다 (없으면 조직 무관 락).
    중첩 호출은 가장 바깥쪽에서 한 번만 커밋/롤백한다.
    """
    keys = sorted({org_id or "" for org_id in org_ids}) or [""]
    with ExitStack() as stack:
        for key in keys:
            stack.enter_context(_lock_for(key))
        depth = db.info.get("uow_depth", 0)
        db.info["uow_depth"] = depth + 1
        try:
            yield db
            if depth == 0:
                db.commit()
        except Exception:
            if depth == 0:
                db.rollback()
            raise
        finally:
            db.info["uow_depth"] = depth


def is_outermost(db: Session) -> bool:
    return db.info.get("uow_depth", 0) == 1


def reload_member(db: Session, member_id: str) -> Member:
    """
    락을 잡은 뒤 회원을 DB에서 다시 읽는다. 락 밖에서 읽은 값(상태, 잔액)은 다른 세션이
    이미 바꿨을 수 있다. 중첩 작업 단위 안에서는 아직 flush되지 않은 변경을 덮어쓰지 않도록
    세션의 객체를 그대로 쓴다.
    """
    if is_outermost(db):
        member = db.get(Member, member_id, populate_existing=True, with_for_update=True)
    else:
        member = db.get(Member, member_id)
    if member is None:
        raise NotFound("Identity not found.")
    return member


@contextmanager
def member_unit(db: Session, member_id: str):
    """회원 조직의 락 안에서 최신 회원 레코드로 작업"""
    member = require_member(db, member_id)
    with unit_of_work(db, member.organization_id):
        yield reload_member(db, member.id)


def organization_ids(db: Session):
    orgs = {org for (org,) in db.query(Member.organization_id).distinct()}
    orgs.update(org for (org,) in db.query(Visitor.organization_id).distinct())
    return sorted(orgs)


# --- 설정 ---

def parse_resumption_time(value: str) -> time:
    m = _TIME_RE.match((value or "").strip())
    if not m:
        raise InvalidCommand(f"Invalid resumption time '{value}', expected HH:MM.")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise InvalidCommand(f"Invalid resumption time '{value}', expected HH:MM.")
    return time(hour, minute)


def get_config(db: Session) -> SystemConfig:
    cfg = db.query(SystemConfig).first()
    if cfg is None:
        cfg = SystemConfig(id=1, **CONFIG_DEFAULTS)
        db.add(cfg)
        db.flush()
    return cfg


def update_config(db: Session, **fields) -> SystemConfig:
    with unit_of_work(db):
        cfg = get_config(db)
        for key, value in fields.items():
            if value is None:
                continue
            if key == "resumption_time":
                parse_resumption_time(value)
            elif key in ("late_fine_amount", "auto_suspend_threshold"):
                if int(value) < 0:
                    raise InvalidCommand(f"{key} must not be negative.")
                value = int(value)
            elif key == "wallet_unlock_minutes":
                if int(value) <= 0:
                    raise InvalidCommand("wallet_unlock_minutes must be positive.")
                value = int(value)
            elif key not in ("maintenance_mode", "sheet_url", "sheet_api_key"):
                raise InvalidCommand(f"Unknown config field '{key}'.")
            setattr(cfg, key, value)
        logger.info("System config updated: %s", sorted(k for k, v in fields.items() if v is not None))
    return cfg


# --- 회원 ---

def get_member(db: Session, member_id: str):
    return db.get(Member, (member_id or "").strip())


def require_member(db: Session, member_id: str) -> Member:
    member = get_member(db, member_id)
    if member is None:
        raise NotFound("Identity not found.")
    return member


def list_members(db: Session, organization_id: str | None = None):
    query = db.query(Member)
    if organization_id:
        query = query.filter(Member.organization_id == organization_id)
    return query.order_by(Member.organization_id, Member.id).all()


def create_member(db: Session, member_id: str, name: str, organization_id: str,
                  role: Role = Role.Member, status: MemberStatus = MemberStatus.Active,
                  photo_url: str = "") -> Member:
    member_id = (member_id or "").strip()
    name = (name or "").strip()
    if not member_id or not name:
        raise InvalidCommand("Member id and name are required.")
    with unit_of_work(db, organization_id):
        if get_member(db, member_id) is not None:
            raise InvalidCommand("Member id already exists.")
        archive = db.get(MemberArchive, member_id)
        if archive is not None and archive.organization_id != organization_id:
            raise InvalidCommand("Member id is archived by another organization.")
        member = Member(
            id=member_id,
            organization_id=organization_id,
            name=name,
            role=_coerce(Role, role),
            status=_coerce(MemberStatus, status),
            photo_url=photo_url or "",
            wallet_balance=0,
            outstanding_fines=0,
            reward_points=0,
            session_progress=0,
        )
        if archive is not None:
            # 원장이 남아 있으므로 보관된 재정 정보로 복원
            member.wallet_balance = archive.wallet_balance
            member.outstanding_fines = archive.outstanding_fines
            member.reward_points = archive.reward_points
            db.delete(archive)
        db.add(member)
    return member


def set_status(db: Session, member_id: str, status) -> Member:
    new_status = _coerce(MemberStatus, status)
    with member_unit(db, member_id) as member:
        member.status = new_status
        member.status_before_late = None
    return member


def set_role(db: Session, member_id: str, role) -> Member:
    new_role = _coerce(Role, role)
    with member_unit(db, member_id) as member:
        member.role = new_role
    return member


def bulk_update(db: Session, ids, status=None, role=None) -> int:
    """ids 중 존재하는 회원의 상태/권한만 변경. 없는 id는 무시하고 변경된 수를 반환"""
    if status is None and role is None:
        raise InvalidCommand("Nothing to update.")
    new_status = _coerce(MemberStatus, status) if status is not None else None
    new_role = _coerce(Role, role) if role is not None else None
    wanted = {str(i).strip() for i in ids if str(i).strip()}
    if not wanted:
        return 0
    orgs = {org for (org,) in db.query(Member.organization_id).filter(Member.id.in_(wanted)).distinct()}
    with unit_of_work(db, *orgs):
        members = (
            db.query(Member)
            .filter(Member.id.in_(wanted))
            .populate_existing()
            .with_for_update()
            .all()
        )
        for member in members:
            if new_status is not None:
                member.status = new_status
                member.status_before_late = None
            if new_role is not None:
                member.role = new_role
    logger.info("Bulk update applied to %d of %d ids", len(members), len(wanted))
    return len(members)


def update_photo(db: Session, member_id: str, photo_url: str) -> Member:
    with member_unit(db, member_id) as member:
        member.photo_url = photo_url or ""
    return member


def adjust_points(db: Session, member_id: str, delta: int) -> Member:
    with member_unit(db, member_id) as member:
        if member.reward_points + delta < 0:
            raise InvalidCommand("Reward points cannot go below zero.")
        member.reward_points += delta
    return member


def clear_fines(db: Session, member_id: str, amount: int | None = None) -> Member:
    """미납 벌금 정리. amount가 없으면 전액. 벌금은 부과 시점에 이미 원장에 반영되어 있다"""
    with member_unit(db, member_id) as member:
        if amount is None:
            amount = member.outstanding_fines
        if amount < 0:
            raise InvalidCommand("Amount must not be negative.")
        if amount > member.outstanding_fines:
            raise InvalidCommand("Amount exceeds outstanding fines.")
        member.outstanding_fines -= amount
    logger.info("Cleared %d in fines for %s", amount, member.id)
    return member


def reset_late_statuses(db: Session, now: datetime | None = None):
    """
    일일 마감: Late -> 지각 전 상태(없으면 Active), 만료된 방문증 -> Expired.
    모든 조직의 락을 잡고 수행한다.
    """
    now = now or datetime.now()
    with unit_of_work(db, *organization_ids(db)):
        late = (
            db.query(Member)
            .filter(Member.status == MemberStatus.Late)
            .populate_existing()
            .with_for_update()
            .all()
        )
        for member in late:
            member.status = member.status_before_late or MemberStatus.Active
            member.status_before_late = None
        expired = (
            db.query(Visitor)
            .filter(Visitor.status == VisitorStatus.CheckedIn, Visitor.expires_at < now)
            .all()
        )
        for visitor in expired:
            visitor.status = VisitorStatus.Expired
    logger.info("Rollover: %d late member(s) reset, %d visitor pass(es) expired", len(late), len(expired))
    return len(late), len(expired)


# --- 출입 기록 ---

def record_access(db: Session, actor_id: str, actor_type: str, outcome: AccessOutcome,
                  notes: str, now: datetime, organization_id: str | None = None,
                  device: str | None = None, action: str = "scan") -> AccessLog:
    entry = AccessLog(
        organization_id=organization_id,
        actor_id=actor_id,
        actor_type=actor_type,
        action=action,
        outcome=outcome,
        created_at=now,
        device=device,
        notes=notes,
    )
    db.add(entry)
    return entry


def access_logs(db: Session, limit: int = 100, actor_id: str | None = None):
    query = db.query(AccessLog)
    if actor_id:
        query = query.filter(AccessLog.actor_id == actor_id)
    return query.order_by(AccessLog.created_at.desc(), AccessLog.id.desc()).limit(limit).all()
