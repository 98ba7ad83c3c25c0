"""
원장(거래 내역) 게시.

회원의 wallet_balance는 원장 합계의 실행 합계(running total)로 유지된다.
모든 게시는 post_transaction을 거치며, 같은 트랜잭션 안에서 잔액도 갱신되므로
항상 wallet_balance == sum(원장 금액) 이 성립한다.
"""
import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from onepass import store, wallet
from onepass.errors import InvalidCommand, MaintenanceMode, NotFound
from onepass.models import (
    Member,
    MemberStatus,
    Transaction,
    TransactionType,
    WithdrawalRequest,
    WithdrawalStatus,
    match_enum,
)

logger = logging.getLogger("onepass.ledger")

LATE_FINE_DESCRIPTION = "Late Arrival Fine"
WITHDRAWAL_DESCRIPTION = "Wallet Withdrawal"

# 입금/포상은 양수, 출금/벌금은 음수
POSITIVE_TYPES = {TransactionType.Credit, TransactionType.Award}
NEGATIVE_TYPES = {TransactionType.Debit, TransactionType.Fine}


def post_transaction(db: Session, member_id: str, type, amount: int, description: str,
                     reference: str | None = None, now: datetime | None = None) -> Transaction:
    tx_type = match_enum(TransactionType, type)
    if tx_type is None:
        raise InvalidCommand(f"Invalid transaction type '{type}'.")
    amount = int(amount)
    if amount == 0:
        raise InvalidCommand("Amount must not be zero.")
    if tx_type in POSITIVE_TYPES and amount < 0:
        raise InvalidCommand(f"{tx_type.value} amounts must be positive.")
    if tx_type in NEGATIVE_TYPES and amount > 0:
        raise InvalidCommand(f"{tx_type.value} amounts must be negative.")
    description = (description or "").strip()
    if not description:
        raise InvalidCommand("Description is required.")

    now = now or datetime.now()
    with store.member_unit(db, member_id) as member:
        tx = Transaction(
            member_id=member.id,
            type=tx_type,
            amount=amount,
            description=description,
            created_at=now,
            reference=reference,
        )
        db.add(tx)
        member.wallet_balance += amount
        if tx_type == TransactionType.Fine:
            member.outstanding_fines += -amount
        _apply_auto_suspend(db, member)
        db.flush()
    logger.info("Posted %s %d for %s (%s)", tx_type.value, amount, member.id, description)
    return tx


def _apply_auto_suspend(db: Session, member: Member):
    threshold = store.get_config(db).auto_suspend_threshold
    if threshold <= 0:
        return
    if member.wallet_balance <= -threshold and member.status in (MemberStatus.Active, MemberStatus.Late):
        member.status = MemberStatus.Suspended
        member.status_before_late = None
        logger.warning("Member %s suspended: debt %d reached threshold %d",
                       member.id, -member.wallet_balance, threshold)


def history(db: Session, member_id: str, limit: int = 200):
    return (
        db.query(Transaction)
        .filter(Transaction.member_id == member_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .all()
    )


def ledger_balance(db: Session, member_id: str) -> int:
    total = db.query(func.coalesce(func.sum(Transaction.amount), 0)).filter(
        Transaction.member_id == member_id
    ).scalar()
    return int(total)


# --- 출금 요청 ---

def request_withdrawal(db: Session, member_id: str, amount: int, now: datetime | None = None) -> WithdrawalRequest:
    now = now or datetime.now()
    store.require_member(db, member_id)
    cfg = store.get_config(db)
    if cfg.maintenance_mode:
        raise MaintenanceMode()
    amount = int(amount)
    if amount <= 0:
        raise InvalidCommand("Withdrawal amount must be positive.")
    with store.member_unit(db, member_id) as member:
        if wallet.is_wallet_locked(member, now, cfg.wallet_unlock_minutes):
            raise InvalidCommand("Wallet is locked. Clear fines and review your dashboard first.")
        if amount > member.wallet_balance:
            raise InvalidCommand("Insufficient wallet balance.")
        pending = (
            db.query(WithdrawalRequest)
            .filter(WithdrawalRequest.member_id == member.id,
                    WithdrawalRequest.status == WithdrawalStatus.Pending)
            .first()
        )
        if pending is not None:
            raise InvalidCommand("A withdrawal request is already pending.")
        request = WithdrawalRequest(
            member_id=member.id,
            amount=amount,
            status=WithdrawalStatus.Pending,
            created_at=now,
        )
        db.add(request)
        db.flush()
    logger.info("Withdrawal #%s requested by %s for %d", request.id, member.id, amount)
    return request


def process_withdrawal(db: Session, request_id: int, approve: bool, processed_by: str,
                       now: datetime | None = None) -> WithdrawalRequest:
    now = now or datetime.now()
    if store.get_config(db).maintenance_mode:
        raise MaintenanceMode()
    request = db.get(WithdrawalRequest, request_id)
    if request is None:
        raise NotFound("Withdrawal request not found.")
    with store.member_unit(db, request.member_id) as member:
        db.refresh(request, with_for_update=True)
        if request.status != WithdrawalStatus.Pending:
            raise InvalidCommand(f"Withdrawal already {request.status.value.lower()}.")
        if approve:
            if request.amount > member.wallet_balance:
                raise InvalidCommand("Insufficient wallet balance.")
            post_transaction(
                db, member.id, TransactionType.Debit, -request.amount,
                WITHDRAWAL_DESCRIPTION, reference=f"WD-{request.id}", now=now,
            )
            request.status = WithdrawalStatus.Approved
        else:
            request.status = WithdrawalStatus.Rejected
        request.processed_at = now
        request.processed_by = processed_by
    logger.info("Withdrawal #%s %s by %s", request.id, request.status.value.lower(), processed_by)
    return request


def list_withdrawals(db: Session, status=None):
    query = db.query(WithdrawalRequest)
    if status is not None:
        wanted = match_enum(WithdrawalStatus, status)
        if wanted is None:
            raise InvalidCommand(f"Invalid withdrawal status '{status}'.")
        query = query.filter(WithdrawalRequest.status == wanted)
    return query.order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc()).all()
