from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from onepass.models import AccessOutcome, MemberStatus, Role, TransactionType, VisitorStatus, WithdrawalStatus


class Token(BaseModel):
    access_token: str
    token_type: str

class LoginRequest(BaseModel):
    id: str
    password: str = ""

class PasswordUpdate(BaseModel):
    current_password: str
    new_password: str


class MemberInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    name: str
    role: Role
    status: MemberStatus
    photo_url: Optional[str] = ""
    wallet_balance: int
    outstanding_fines: int
    reward_points: int
    last_dashboard_view: Optional[datetime] = None
    session_progress: int = 0

class MemberDashboard(MemberInfo):
    wallet_locked: bool
    wallet_unlocked_until: Optional[datetime] = None

class MemberCreate(BaseModel):
    id: str
    name: str
    organization_id: Optional[str] = None
    role: str = Role.Member.value
    status: str = MemberStatus.Active.value
    photo_url: str = ""

class BulkUpdate(BaseModel):
    ids: List[str]
    status: Optional[str] = None
    role: Optional[str] = None

class PhotoUpdate(BaseModel):
    photo: str

class PointsAdjust(BaseModel):
    delta: int

class FineClearance(BaseModel):
    amount: Optional[int] = None


class TransactionCreate(BaseModel):
    member_id: str
    type: str
    amount: int
    description: str
    reference: Optional[str] = None

class TransactionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: str
    type: TransactionType
    amount: int
    description: str
    created_at: datetime
    reference: Optional[str] = None


class WithdrawalCreate(BaseModel):
    amount: int

class WithdrawalDecision(BaseModel):
    approve: bool

class WithdrawalInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: str
    amount: int
    status: WithdrawalStatus
    created_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class ConfigInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    resumption_time: str
    late_fine_amount: int
    auto_suspend_threshold: int
    wallet_unlock_minutes: int
    maintenance_mode: bool
    sheet_url: Optional[str] = None
    last_sync_at: Optional[datetime] = None

class ConfigUpdate(BaseModel):
    resumption_time: Optional[str] = None
    late_fine_amount: Optional[int] = None
    auto_suspend_threshold: Optional[int] = None
    wallet_unlock_minutes: Optional[int] = None
    maintenance_mode: Optional[bool] = None
    sheet_url: Optional[str] = None
    sheet_api_key: Optional[str] = None


class VisitorCreate(BaseModel):
    host_id: str
    name: str
    purpose: str = ""
    hours: Optional[int] = None

class VisitorInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    host_id: Optional[str] = None
    name: str
    purpose: Optional[str] = ""
    checked_in_at: datetime
    expires_at: datetime
    status: VisitorStatus


class ScanRequest(BaseModel):
    id: str

class ScanResponse(BaseModel):
    allowed: bool
    found: bool
    message: str
    member: Optional[MemberInfo] = None
    visitor: Optional[VisitorInfo] = None

class DeviceEvent(BaseModel):
    device_id: str
    organization_id: str
    actor_type: str
    actor_id: str
    event_type: str = "scan"
    timestamp: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class AccessLogInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: Optional[str] = None
    actor_id: str
    actor_type: str
    action: str
    outcome: AccessOutcome
    created_at: datetime
    device: Optional[str] = None
    notes: Optional[str] = ""


class SyncTables(BaseModel):
    # 비어 있으면 설정된 스프레드시트에서 가져온다
    table: Optional[List[List[Any]]] = None

class Resolution(BaseModel):
    member_id: str
    field: str
    choice: str = Field(pattern="^(local|external)$")

class SyncCommit(SyncTables):
    resolutions: List[Resolution] = []
    push: bool = True


class AnalystQuery(BaseModel):
    query: str
