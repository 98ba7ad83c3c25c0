"""
출입 판정 (QR/RFID 스캔, 장치 이벤트).

한 번의 판정에서 발생하는 상태 변경, 지각 벌금 게시, 출입 기록은 하나의 작업 단위로
커밋된다. 지각 벌금은 상태가 이미 Late이면 다시 부과하지 않는다.
"""
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from onepass import config, ledger, store
from onepass.errors import InvalidCommand
from onepass.models import (
    DENIED_STATUSES,
    AccessOutcome,
    Member,
    MemberStatus,
    TransactionType,
    Visitor,
    VisitorStatus,
)

logger = logging.getLogger("onepass.access")

NOTE_ON_TIME = "On Time"
NOTE_LATE = "Late Entry"

LOOKUP_ORDERS = {
    "member": ("member", "visitor"),
    "visitor": ("visitor", "member"),
}


@dataclass
class ScanResult:
    allowed: bool
    message: str
    member: Member | None = None
    visitor: Visitor | None = None

    @property
    def found(self) -> bool:
        return self.member is not None or self.visitor is not None


def evaluate_access(db: Session, identifier: str, now: datetime | None = None,
                    priority: str | None = None, device: str | None = None,
                    action: str = "scan", organization_id: str | None = None) -> ScanResult:
    identifier = (identifier or "").strip()
    if not identifier:
        raise InvalidCommand("Identifier is required.")
    now = now or datetime.now()
    order = LOOKUP_ORDERS.get((priority or config.SCAN_PRIORITY).lower())
    if order is None:
        raise InvalidCommand(f"Unknown lookup priority '{priority}'.")

    for kind in order:
        if kind == "member":
            member = db.get(Member, identifier)
            if member is not None:
                return _evaluate_member(db, member.id, now, device, action)
        else:
            visitor = db.get(Visitor, identifier)
            if visitor is not None:
                return _evaluate_visitor(db, visitor, now, device, action)

    with store.unit_of_work(db, organization_id):
        store.record_access(db, identifier, "unknown", AccessOutcome.Denied, "Identity not found",
                            now, organization_id=organization_id, device=device, action=action)
    logger.info("Scan %s: unknown identity", identifier)
    return ScanResult(allowed=False, message="Identity unknown. Access denied.")


def _evaluate_member(db: Session, member_id: str, now: datetime, device, action) -> ScanResult:
    # 락을 잡은 뒤 다시 읽은 상태로 지각 여부를 판정해야 벌금이 한 번만 부과된다
    with store.member_unit(db, member_id) as member:
        cfg = store.get_config(db)
        if member.status in DENIED_STATUSES:
            outcome, allowed = AccessOutcome.Denied, False
            note = member.status.value
            message = f"Access denied. Member is {member.status.value.lower()}."
        else:
            outcome, allowed = AccessOutcome.Granted, True
            resumption = store.parse_resumption_time(cfg.resumption_time)
            if now.time() > resumption:
                note = NOTE_LATE
                if member.status != MemberStatus.Late:
                    member.status_before_late = member.status
                    member.status = MemberStatus.Late
                    if cfg.late_fine_amount > 0:
                        ledger.post_transaction(
                            db, member.id, TransactionType.Fine, -cfg.late_fine_amount,
                            ledger.LATE_FINE_DESCRIPTION, reference=f"SCAN-{now:%Y%m%d}", now=now,
                        )
                    message = f"LATE ARRIVAL. Fine of {cfg.late_fine_amount} applied."
                else:
                    message = "Late entry recorded. Access granted."
            else:
                note = NOTE_ON_TIME
                message = "Passport verified. Access granted."
        store.record_access(db, member.id, "member", outcome, note, now,
                            organization_id=member.organization_id, device=device, action=action)
    logger.info("Scan %s: %s (%s)", member.id, outcome.value, note)
    return ScanResult(allowed=allowed, message=message, member=member)


def _evaluate_visitor(db: Session, visitor: Visitor, now: datetime, device, action) -> ScanResult:
    if visitor.status == VisitorStatus.CheckedOut:
        allowed, message = False, "Visitor pass already checked out."
    elif visitor.status == VisitorStatus.Expired or now > visitor.expires_at:
        allowed, message = False, "Visitor pass expired."
    else:
        allowed, message = True, "Visitor pass valid."
    outcome = AccessOutcome.Granted if allowed else AccessOutcome.Denied
    with store.unit_of_work(db, visitor.organization_id):
        store.record_access(db, visitor.id, "visitor", outcome, message, now,
                            organization_id=visitor.organization_id, device=device, action=action)
    logger.info("Scan %s (visitor): %s", visitor.id, outcome.value)
    return ScanResult(allowed=allowed, message=message, visitor=visitor)


def process_device_event(db: Session, device_id: str, organization_id: str, actor_type: str,
                         actor_id: str, event_type: str, timestamp: datetime | None = None,
                         metadata: dict | None = None, now: datetime | None = None) -> ScanResult:
    """하드웨어 노드 이벤트. 지각 판정은 장치 시각이 아닌 서버 시각 기준"""
    actor_type = (actor_type or "").strip().lower()
    if actor_type not in LOOKUP_ORDERS:
        raise InvalidCommand(f"Unsupported actor type '{actor_type}'.")
    logger.debug("Device %s event %s reported at %s metadata=%s", device_id, event_type, timestamp, metadata)
    return evaluate_access(
        db, actor_id, now=now, priority=actor_type, device=device_id,
        action=event_type or "scan", organization_id=organization_id,
    )


def attendance_history(db: Session, member_id: str, limit: int = 30):
    logs = [
        log for log in store.access_logs(db, limit=limit, actor_id=member_id)
        if log.actor_type == "member" and log.outcome == AccessOutcome.Granted
    ]
    return [
        {
            "timestamp": log.created_at,
            "type": "IN",
            "status": "LATE" if log.notes == NOTE_LATE else "NORMAL",
        }
        for log in logs
    ]
