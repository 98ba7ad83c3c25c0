"""
지갑 잠금 판정.

잠금 여부는 저장하지 않고 대시보드를 열 때마다 계산한다. 회원 레코드에는
마지막 대시보드 확인 시각(last_dashboard_view)만 남는다.
"""
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from onepass import store


def unlocks_until(member, window_minutes: int):
    """확인 후 잠금 해제가 유지되는 마지막 시각. 확인 기록이 없으면 None"""
    if member.last_dashboard_view is None:
        return None
    return member.last_dashboard_view + timedelta(minutes=window_minutes)


def is_wallet_locked(member, now: datetime, window_minutes: int) -> bool:
    # 미납 벌금이 있으면 무조건 잠금
    if member.outstanding_fines > 0:
        return True
    until = unlocks_until(member, window_minutes)
    if until is None:
        return True
    return now >= until


def acknowledge_dashboard(db: Session, member_id: str, now: datetime | None = None):
    with store.member_unit(db, member_id) as member:
        member.last_dashboard_view = now or datetime.now()
    return member
