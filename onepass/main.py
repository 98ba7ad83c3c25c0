import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

# 내부 모듈 임포트
from onepass import access, config, insights, ledger, sheets, store, sync, visitors, wallet
from onepass import database as db
from onepass import models
from onepass.database import get_db
from onepass.errors import SheetUnavailable, register_error_handlers
from onepass.init_db import seed_accounts
from onepass.models import Member, VisitorStatus
from onepass.schemas import (
    AccessLogInfo,
    AnalystQuery,
    BulkUpdate,
    ConfigInfo,
    ConfigUpdate,
    DeviceEvent,
    FineClearance,
    LoginRequest,
    MemberCreate,
    MemberDashboard,
    MemberInfo,
    PasswordUpdate,
    PhotoUpdate,
    PointsAdjust,
    ScanRequest,
    ScanResponse,
    SyncCommit,
    SyncTables,
    Token,
    TransactionCreate,
    TransactionInfo,
    VisitorCreate,
    VisitorInfo,
    WithdrawalCreate,
    WithdrawalDecision,
    WithdrawalInfo,
)
from onepass.security import (
    authenticate,
    change_password,
    get_current_admin,
    get_current_staff,
    get_current_user,
    issue_token,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("onepass.api")

# 데이터베이스 테이블 생성 (실제 운영 환경에서는 Alembic 같은 마이그레이션 도구 사용 권장)
models.Base.metadata.create_all(bind=db.engine)

app = FastAPI(title="OnePass API")
register_error_handlers(app)


def ok(message: str = "", **extra):
    return {"success": True, "message": message, **extra}


def get_sheet_client_factory():
    """테스트에서 교체할 수 있도록 의존성으로 제공"""
    return sheets.SheetClient.from_config


def _dashboard(db_session: Session, member: Member) -> MemberDashboard:
    cfg = store.get_config(db_session)
    now = datetime.now()
    info = MemberInfo.model_validate(member).model_dump()
    return MemberDashboard(
        **info,
        wallet_locked=wallet.is_wallet_locked(member, now, cfg.wallet_unlock_minutes),
        wallet_unlocked_until=wallet.unlocks_until(member, cfg.wallet_unlock_minutes),
    )


def _scan_response(result: access.ScanResult) -> ScanResponse:
    return ScanResponse(
        allowed=result.allowed,
        found=result.found,
        message=result.message,
        member=MemberInfo.model_validate(result.member) if result.member is not None else None,
        visitor=VisitorInfo.model_validate(result.visitor) if result.visitor is not None else None,
    )


# --- API 엔드포인트 ---

@app.get("/")
def read_root():
    return {"message": "OnePass API is running."}

@app.post("/token", response_model=Token)
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db_session: Session = Depends(get_db)):
    """
    회원 ID(username)와 비밀번호로 로그인하여 JWT 토큰 발급
    """
    user, error = authenticate(db_session, form_data.username, form_data.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"access_token": issue_token(user), "token_type": "bearer"}

@app.post("/login")
def login(body: LoginRequest, db_session: Session = Depends(get_db)):
    user, error = authenticate(db_session, body.id, body.password)
    if user is None:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"success": False, "error": error})
    return ok("Login successful.", member=MemberInfo.model_validate(user), access_token=issue_token(user),
              token_type="bearer")


# --- 회원 본인 API ---

@app.get("/members/me", response_model=MemberDashboard)
def read_users_me(db_session: Session = Depends(get_db), current_user: Member = Depends(get_current_user)):
    """
    대시보드 정보 + 지갑 잠금 여부 (매번 계산)
    """
    return _dashboard(db_session, current_user)

@app.post("/members/me/acknowledge", response_model=MemberDashboard)
def acknowledge_dashboard(db_session: Session = Depends(get_db), current_user: Member = Depends(get_current_user)):
    """
    대시보드 확인 기록 -> 일정 시간 지갑 잠금 해제
    """
    member = wallet.acknowledge_dashboard(db_session, current_user.id)
    return _dashboard(db_session, member)

@app.get("/members/me/history")
def my_history(db_session: Session = Depends(get_db), current_user: Member = Depends(get_current_user)):
    entries = ledger.history(db_session, current_user.id)
    return ok(data=[TransactionInfo.model_validate(t) for t in entries])

@app.get("/members/me/attendance")
def my_attendance(db_session: Session = Depends(get_db), current_user: Member = Depends(get_current_user)):
    return ok(data=access.attendance_history(db_session, current_user.id))

@app.get("/members/me/insights")
def my_insights(current_user: Member = Depends(get_current_user)):
    return ok(data=insights.member_insight(current_user))

@app.post("/members/me/withdrawals")
def request_withdrawal(body: WithdrawalCreate, db_session: Session = Depends(get_db), current_user: Member = Depends(get_current_user)):
    request = ledger.request_withdrawal(db_session, current_user.id, body.amount)
    return ok("Withdrawal request submitted.", data=WithdrawalInfo.model_validate(request))

@app.put("/members/me/password")
def update_password(password_data: PasswordUpdate, db_session: Session = Depends(get_db), current_user: Member = Depends(get_current_user)):
    """
    인증된 사용자가 자신의 비밀번호를 변경
    """
    change_password(db_session, current_user, password_data.current_password, password_data.new_password)
    return ok("Password updated successfully")


# --- 출입 판정 ---

@app.post("/scan", response_model=ScanResponse)
def scan(body: ScanRequest, db_session: Session = Depends(get_db), staff: Member = Depends(get_current_staff)):
    return _scan_response(access.evaluate_access(db_session, body.id, device=f"desk:{staff.id}"))

@app.post("/hardware/events", response_model=ScanResponse)
def process_hardware_event(event: DeviceEvent, db_session: Session = Depends(get_db),
                           x_device_key: Optional[str] = Header(default=None)):
    if config.DEVICE_KEY and x_device_key != config.DEVICE_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid device key")
    result = access.process_device_event(
        db_session,
        device_id=event.device_id,
        organization_id=event.organization_id,
        actor_type=event.actor_type,
        actor_id=event.actor_id,
        event_type=event.event_type,
        timestamp=event.timestamp,
        metadata=event.metadata,
    )
    return _scan_response(result)


# --- 관리자 전용 API ---

@app.get("/admin/members")
def read_all_members(db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 전체 회원 목록 조회 (getMembers)
    """
    members = store.list_members(db_session)
    return ok(data=[MemberInfo.model_validate(m) for m in members])

@app.post("/admin/members")
def create_member(member: MemberCreate, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 개별 회원 직접 등록
    """
    new_member = store.create_member(
        db_session,
        member.id,
        member.name,
        member.organization_id or admin.organization_id,
        role=member.role,
        status=member.status,
        photo_url=member.photo_url,
    )
    return ok("Member created.", data=MemberInfo.model_validate(new_member))

@app.post("/admin/members/bulk")
def bulk_update(body: BulkUpdate, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 선택한 회원들의 상태/권한 일괄 변경 (bulkUpdate)
    """
    count = store.bulk_update(db_session, body.ids, status=body.status, role=body.role)
    return ok(f"{count} member(s) updated.", updated=count)

@app.patch("/admin/members/{member_id}/status")
def update_member_status(member_id: str, new_status: str, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 회원 상태 변경 (Active / Late / Suspended / Blocked / Locked)
    """
    member = store.set_status(db_session, member_id, new_status)
    return ok(f"Status changed to {member.status.value}.", data=MemberInfo.model_validate(member))

@app.patch("/admin/members/{member_id}/role")
def update_member_role(member_id: str, role: str, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 회원 권한 변경 (updateMemberRole)
    """
    member = store.set_role(db_session, member_id, role)
    return ok(f"Role changed to {member.role.value}.", data=MemberInfo.model_validate(member))

@app.post("/admin/members/{member_id}/photo")
def upload_photo(member_id: str, body: PhotoUpdate, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    store.update_photo(db_session, member_id, body.photo)
    return ok("Photo updated.")

@app.post("/admin/members/{member_id}/points")
def adjust_points(member_id: str, body: PointsAdjust, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    member = store.adjust_points(db_session, member_id, body.delta)
    return ok("Reward points updated.", data=MemberInfo.model_validate(member))

@app.post("/admin/members/{member_id}/clear-fines")
def clear_fines(member_id: str, body: FineClearance, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    member = store.clear_fines(db_session, member_id, body.amount)
    return ok("Fines cleared.", data=MemberInfo.model_validate(member))

@app.get("/admin/members/{member_id}/history")
def member_history(member_id: str, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 회원 거래 내역 (getHistory)
    """
    store.require_member(db_session, member_id)
    return ok(data=[TransactionInfo.model_validate(t) for t in ledger.history(db_session, member_id)])

@app.post("/admin/transactions")
def post_transaction(body: TransactionCreate, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    tx = ledger.post_transaction(
        db_session, body.member_id, body.type, body.amount, body.description,
        reference=body.reference or f"ADMIN:{admin.id}",
    )
    return ok("Transaction posted.", data=TransactionInfo.model_validate(tx))

@app.get("/admin/withdrawals")
def list_withdrawals(status_filter: Optional[str] = None, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    requests = ledger.list_withdrawals(db_session, status_filter)
    return ok(data=[WithdrawalInfo.model_validate(r) for r in requests])

@app.post("/admin/withdrawals/{request_id}")
def process_withdrawal(request_id: int, body: WithdrawalDecision, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 출금 요청 승인/거절 (processWithdrawal)
    """
    request = ledger.process_withdrawal(db_session, request_id, body.approve, processed_by=admin.id)
    return ok(f"Withdrawal {request.status.value.lower()}.", data=WithdrawalInfo.model_validate(request))

@app.get("/admin/config", response_model=ConfigInfo)
def read_config(db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    return store.get_config(db_session)

@app.put("/admin/config")
def update_config(body: ConfigUpdate, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 규칙 설정 변경 (updateConfig)
    """
    cfg = store.update_config(db_session, **body.model_dump(exclude_unset=True))
    return ok("Configuration saved.", data=ConfigInfo.model_validate(cfg))


# --- 동기화 ---

@app.post("/admin/sync")
def sync_from_sheet(db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin),
                    client_factory=Depends(get_sheet_client_factory)):
    """
    [관리자] 스프레드시트의 Import-* 시트를 중앙 회원 테이블로 병합
    """
    try:
        tables = client_factory(store.get_config(db_session)).fetch_sources()
    except SheetUnavailable as e:
        logger.warning("Sync aborted: %s", e.message)
        return {"success": False, "message": f"Sync skipped, local data unchanged. {e.message}"}
    result = sync.merge_sources(db_session, tables, organization_id=admin.organization_id)
    return ok(f"Merged {result.imported} member(s).", data=result.summary())

@app.post("/admin/sync/upload")
async def sync_from_upload(file: UploadFile = File(...), source: Optional[str] = Form(default=None),
                           db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] .xlsx (시트별 소스) 또는 .csv (단일 소스) 파일로 병합
    """
    filename = (file.filename or "").lower()
    content = await file.read()
    if filename.endswith(".xlsx"):
        tables = sheets.read_workbook(content)
    elif filename.endswith(".csv"):
        tables = sheets.read_csv(content, source or Path(file.filename).stem)
    else:
        raise HTTPException(status_code=400, detail="Unsupported file type. Use .csv or .xlsx.")
    result = sync.merge_sources(db_session, tables, organization_id=admin.organization_id)
    return ok(f"Merged {result.imported} member(s).", data=result.summary())

def _external_records(body: SyncTables, db_session: Session, client_factory):
    if body.table is not None:
        return sync.read_member_table(body.table)
    return sync.read_member_table(client_factory(store.get_config(db_session)).fetch_members())

@app.post("/admin/sync/preview")
def sync_preview(body: SyncTables, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin),
                 client_factory=Depends(get_sheet_client_factory)):
    """
    [관리자] 중앙 시트와 로컬 재정 값 비교 (반영하지 않음)
    """
    try:
        records = _external_records(body, db_session, client_factory)
    except SheetUnavailable as e:
        return {"success": False, "message": e.message, "conflicts": []}
    conflicts = sync.preview_sync(db_session, records, admin.organization_id)
    return ok(f"{len(conflicts)} conflict(s) found.", conflicts=[c.as_dict() for c in conflicts])

@app.post("/admin/sync/commit")
def sync_commit(body: SyncCommit, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin),
                client_factory=Depends(get_sheet_client_factory)):
    """
    [관리자] 충돌 해결 후 확정 (syncCommit). 미해결 충돌이 있으면 409
    """
    try:
        records = _external_records(body, db_session, client_factory)
    except SheetUnavailable as e:
        return {"success": False, "message": e.message}
    resolutions = {(r.member_id, r.field): r.choice for r in body.resolutions}
    summary = sync.commit_sync(db_session, records, resolutions, actor=admin.id,
                               organization_id=admin.organization_id)
    if not body.push:
        return ok("Sync committed locally.", data=summary)
    try:
        client_factory(store.get_config(db_session)).push_members(store.list_members(db_session, admin.organization_id))
    except SheetUnavailable as e:
        return {"success": False, "committed": True, "data": summary,
                "message": f"Local changes saved, spreadsheet not updated. {e.message}"}
    return ok("Sheet synchronized with hub database.", committed=True, data=summary)


# --- 방문자 ---

@app.post("/admin/visitors")
def create_visitor(body: VisitorCreate, db_session: Session = Depends(get_db), staff: Member = Depends(get_current_staff)):
    visitor = visitors.create_visitor(db_session, body.host_id, body.name, body.purpose, body.hours)
    return ok("Visitor pass issued.", data=VisitorInfo.model_validate(visitor))

@app.get("/admin/visitors")
def list_visitors(status_filter: Optional[VisitorStatus] = None, db_session: Session = Depends(get_db), staff: Member = Depends(get_current_staff)):
    return ok(data=[VisitorInfo.model_validate(v) for v in visitors.list_visitors(db_session, status_filter)])

@app.post("/admin/visitors/{visitor_id}/checkout")
def checkout_visitor(visitor_id: str, db_session: Session = Depends(get_db), staff: Member = Depends(get_current_staff)):
    visitor = visitors.checkout_visitor(db_session, visitor_id)
    return ok("Visitor checked out.", data=VisitorInfo.model_validate(visitor))


# --- 기록 / 운영 ---

@app.get("/admin/access-logs")
def get_access_logs(limit: int = 100, actor_id: Optional[str] = None, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    logs = store.access_logs(db_session, limit=min(max(limit, 1), 1000), actor_id=actor_id)
    return ok(data=[AccessLogInfo.model_validate(log) for log in logs])

@app.post("/admin/rollover")
def rollover(db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    """
    [관리자] 일일 마감: 지각 상태 초기화, 만료 방문증 정리
    """
    reset, expired = store.reset_late_statuses(db_session)
    return ok(f"{reset} late status(es) reset, {expired} visitor pass(es) expired.", reset=reset, expired=expired)

@app.post("/admin/analyst")
def analyst(body: AnalystQuery, db_session: Session = Depends(get_db), admin: Member = Depends(get_current_admin)):
    return ok(data=insights.admin_analyst(body.query, store.list_members(db_session)))

@app.get("/init-db")
def init_database(secret: str, db_session: Session = Depends(get_db)):
    """
    [초기화] 데이터베이스에 관리자 및 테스트 계정 생성
    (Shell 접속이 어려울 때 브라우저에서 실행용)
    """
    # 비밀키가 일치하지 않으면 초기화 거부
    if secret != config.INIT_DB_SECRET:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid secret for DB initialization")
    messages = seed_accounts(db_session)
    return {"success": True, "details": messages}
