import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from onepass import config, store
from onepass.errors import InvalidCommand, NotFound
from onepass.models import Visitor, VisitorStatus

logger = logging.getLogger("onepass.visitors")


def _new_visitor_id(db: Session) -> str:
    while True:
        candidate = f"VIS-{secrets.randbelow(100000):05d}"
        if db.get(Visitor, candidate) is None:
            return candidate


def create_visitor(db: Session, host_id: str, name: str, purpose: str = "",
                   hours: int | None = None, now: datetime | None = None) -> Visitor:
    name = (name or "").strip()
    if not name:
        raise InvalidCommand("Visitor name is required.")
    hours = config.VISITOR_PASS_HOURS if hours is None else int(hours)
    if hours <= 0:
        raise InvalidCommand("Visitor pass duration must be positive.")
    host = store.require_member(db, host_id)
    now = now or datetime.now()
    with store.unit_of_work(db, host.organization_id):
        visitor = Visitor(
            id=_new_visitor_id(db),
            organization_id=host.organization_id,
            host_id=host.id,
            name=name,
            purpose=(purpose or "").strip(),
            checked_in_at=now,
            expires_at=now + timedelta(hours=hours),
            status=VisitorStatus.CheckedIn,
        )
        db.add(visitor)
    logger.info("Visitor %s checked in by host %s until %s", visitor.id, host.id, visitor.expires_at)
    return visitor


def checkout_visitor(db: Session, visitor_id: str) -> Visitor:
    visitor = db.get(Visitor, (visitor_id or "").strip())
    if visitor is None:
        raise NotFound("Visitor not found.")
    with store.unit_of_work(db, visitor.organization_id):
        visitor.status = VisitorStatus.CheckedOut
    logger.info("Visitor %s checked out", visitor.id)
    return visitor


def list_visitors(db: Session, status=None):
    query = db.query(Visitor)
    if status is not None:
        query = query.filter(Visitor.status == VisitorStatus(status))
    return query.order_by(Visitor.checked_in_at.desc()).all()
