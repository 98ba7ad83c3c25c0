"""
외부 시트(Import-*)와 중앙 회원 테이블의 병합/동기화.

- 헤더 이름(대소문자 무시, 별칭 허용)으로 열을 찾는다. ID/이름 열을 찾지 못한 시트는 통째로 건너뛴다.
- 같은 ID는 처음 나온 행만 사용한다 (시트 간 중복 포함).
- 지갑 잔액/미납 벌금/포인트는 시트에서 가져오지 않고 기존 값(없으면 0)을 유지한다.
- 병합 결과로 중앙 테이블을 통째로 교체한다. 빠진 회원은 재정 정보를 보관 테이블에 남긴 뒤 제거한다.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from onepass import config, ledger, store
from onepass.errors import InvalidCommand, MaintenanceMode, SyncConflictPending
from onepass.models import (
    Member,
    MemberArchive,
    MemberStatus,
    Role,
    TransactionType,
    match_enum,
)

logger = logging.getLogger("onepass.sync")

SYNC_ADJUSTMENT_DESCRIPTION = "Sync Adjustment"

HEADER_ALIASES = {
    "id": {"member id", "id", "reg no", "reg no.", "registration no", "member no"},
    "name": {"full name", "name", "member name"},
    "role": {"role", "position"},
    "status": {"status"},
    "photo": {"photo", "photo url", "image", "picture"},
}

# 중앙 DB 시트에만 있는 재정 열 (충돌 검사용)
FINANCIAL_ALIASES = {
    "wallet_balance": {"wallet", "wallet balance"},
    "outstanding_fines": {"fines", "outstanding fines"},
    "reward_points": {"points", "reward points"},
}

FINANCIAL_FIELDS = tuple(FINANCIAL_ALIASES)


@dataclass
class ColumnMap:
    id: int
    name: int
    role: int | None = None
    status: int | None = None
    photo: int | None = None


@dataclass
class Financials:
    wallet_balance: int = 0
    outstanding_fines: int = 0
    reward_points: int = 0


@dataclass
class CompiledMember:
    id: str
    name: str
    role: Role
    status: MemberStatus
    photo_url: str
    source: str
    wallet_balance: int = 0
    outstanding_fines: int = 0
    reward_points: int = 0


@dataclass
class MergeResult:
    members: list = field(default_factory=list)
    per_source: dict = field(default_factory=dict)
    skipped_sources: list = field(default_factory=list)
    duplicates: int = 0
    created: int = 0
    updated: int = 0
    dropped: list = field(default_factory=list)

    @property
    def imported(self) -> int:
        return len(self.members)

    def summary(self) -> dict:
        return {
            "imported": self.imported,
            "per_source": dict(self.per_source),
            "skipped_sources": list(self.skipped_sources),
            "duplicates": self.duplicates,
            "created": self.created,
            "updated": self.updated,
            "dropped": list(self.dropped),
        }


@dataclass
class ExternalRecord:
    id: str
    name: str = ""
    wallet_balance: int | None = None
    outstanding_fines: int | None = None
    reward_points: int | None = None


@dataclass
class SyncConflict:
    member_id: str
    name: str
    field: str
    local_value: int
    external_value: int

    def as_dict(self) -> dict:
        return asdict(self)


def normalize_header(value) -> str:
    return " ".join(str(value or "").replace("_", " ").split()).lower()


def clean_cell(value) -> str:
    if value is None:
        return ""
    s = str(value).strip()
    # 엑셀에서 숫자가 20241234.0 처럼 읽히는 경우 .0 제거
    if s.endswith(".0") and s.replace(".", "", 1).isdigit():
        return s[:-2]
    return s


def _cell(row, index):
    if index is None or index >= len(row):
        return ""
    return clean_cell(row[index])


def _find_column(headers, aliases):
    for index, header in enumerate(headers):
        if header in aliases:
            return index
    return None


def resolve_columns(header_row):
    """ID/이름 열을 찾지 못하면 None"""
    headers = [normalize_header(h) for h in header_row or []]
    found = {key: _find_column(headers, aliases) for key, aliases in HEADER_ALIASES.items()}
    if found["id"] is None or found["name"] is None:
        return None
    return ColumnMap(**found)


def default_role_for(source_name: str, source_roles=None) -> Role:
    roles = config.SOURCE_ROLES if source_roles is None else source_roles
    return match_enum(Role, roles.get(source_name, Role.Member.value)) or Role.Member


def compile_members(sources, snapshot=None, source_roles=None) -> MergeResult:
    """
    sources: {시트 이름: [헤더 행, 데이터 행...]} (순서대로 처리)
    snapshot: {회원 ID: Financials} 기존 재정 정보
    """
    snapshot = snapshot or {}
    result = MergeResult()
    seen = set()

    for source_name, table in sources.items():
        if not table:
            logger.warning("Source %s is empty, skipped", source_name)
            result.skipped_sources.append(source_name)
            continue
        header, rows = table[0], table[1:]
        columns = resolve_columns(header)
        if columns is None:
            logger.warning("Source %s has no recognizable id/name columns, skipped", source_name)
            result.skipped_sources.append(source_name)
            continue

        fallback_role = default_role_for(source_name, source_roles)
        count = 0
        for row in rows:
            member_id = _cell(row, columns.id)
            if not member_id:
                continue
            if member_id in seen:
                result.duplicates += 1
                continue
            seen.add(member_id)

            role = match_enum(Role, _cell(row, columns.role)) or fallback_role
            status = match_enum(MemberStatus, _cell(row, columns.status)) or MemberStatus.Active
            money = snapshot.get(member_id) or Financials()
            result.members.append(CompiledMember(
                id=member_id,
                name=_cell(row, columns.name),
                role=role,
                status=status,
                photo_url=_cell(row, columns.photo),
                source=source_name,
                wallet_balance=money.wallet_balance,
                outstanding_fines=money.outstanding_fines,
                reward_points=money.reward_points,
            ))
            count += 1
        result.per_source[source_name] = count

    return result


def _to_int(value):
    text = clean_cell(value).replace(",", "")
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


def read_member_table(table):
    """중앙 DB 형태의 시트(재정 열 포함)를 ExternalRecord 목록으로 변환"""
    if not table:
        return []
    columns = resolve_columns(table[0])
    if columns is None:
        raise InvalidCommand("Member table has no recognizable id/name columns.")
    headers = [normalize_header(h) for h in table[0]]
    money_cols = {key: _find_column(headers, aliases) for key, aliases in FINANCIAL_ALIASES.items()}
    records = []
    for row in table[1:]:
        member_id = _cell(row, columns.id)
        if not member_id:
            continue
        values = {
            key: _to_int(row[index]) if index is not None and index < len(row) else None
            for key, index in money_cols.items()
        }
        records.append(ExternalRecord(id=member_id, name=_cell(row, columns.name), **values))
    return records


def detect_conflicts(records, local_members) -> list:
    """외부 값과 로컬 값이 다른 재정 필드 목록. local_members: {ID: Member}"""
    conflicts = []
    for record in records:
        local = local_members.get(record.id)
        if local is None:
            continue
        for field_name in FINANCIAL_FIELDS:
            external_value = getattr(record, field_name)
            if external_value is None:
                continue
            local_value = getattr(local, field_name)
            if local_value != external_value:
                conflicts.append(SyncConflict(
                    member_id=local.id,
                    name=local.name,
                    field=field_name,
                    local_value=local_value,
                    external_value=external_value,
                ))
    return conflicts


# --- DB 반영 ---

def _check_maintenance(db: Session):
    if store.get_config(db).maintenance_mode:
        raise MaintenanceMode()


def merge_sources(db: Session, sources, organization_id: str | None = None,
                  source_roles=None, now: datetime | None = None) -> MergeResult:
    organization_id = organization_id or config.DEFAULT_ORGANIZATION
    now = now or datetime.now()
    _check_maintenance(db)

    with store.unit_of_work(db, organization_id):
        existing = {
            m.id: m for m in db.query(Member)
            .filter(Member.organization_id == organization_id)
            .populate_existing()
            .with_for_update()
            .all()
        }
        archived = {
            a.id: a for a in db.query(MemberArchive).filter(MemberArchive.organization_id == organization_id).all()
        }
        snapshot = {
            a.id: Financials(a.wallet_balance, a.outstanding_fines, a.reward_points)
            for a in archived.values()
        }
        snapshot.update({
            m.id: Financials(m.wallet_balance, m.outstanding_fines, m.reward_points)
            for m in existing.values()
        })

        result = compile_members(sources, snapshot, source_roles)

        # 다른 조직의 회원이거나 다른 조직에 보관된 ID는 가져오지 않는다 (원장이 그 조직에 남아 있음)
        incoming_ids = [c.id for c in result.members if c.id not in existing]
        foreign = set()
        if incoming_ids:
            foreign = {
                m.id for m in db.query(Member).filter(
                    Member.id.in_(incoming_ids), Member.organization_id != organization_id
                ).all()
            }
            foreign.update(
                a.id for a in db.query(MemberArchive).filter(
                    MemberArchive.id.in_(incoming_ids), MemberArchive.organization_id != organization_id
                ).all()
            )
        if foreign:
            logger.warning("Skipping %d id(s) owned by another organization: %s", len(foreign), sorted(foreign))
            result.members = [c for c in result.members if c.id not in foreign]

        for compiled in result.members:
            member = existing.get(compiled.id)
            if member is None:
                member = Member(id=compiled.id, organization_id=organization_id, session_progress=0)
                db.add(member)
                archive = archived.get(compiled.id)
                if archive is not None:
                    db.delete(archive)
                result.created += 1
            else:
                result.updated += 1
            member.name = compiled.name
            member.role = compiled.role
            member.status = compiled.status
            member.status_before_late = None
            if compiled.photo_url:
                member.photo_url = compiled.photo_url
            elif member.photo_url is None:
                member.photo_url = ""
            member.wallet_balance = compiled.wallet_balance
            member.outstanding_fines = compiled.outstanding_fines
            member.reward_points = compiled.reward_points

        keep = {c.id for c in result.members}
        for member_id, member in existing.items():
            if member_id in keep:
                continue
            archive = db.get(MemberArchive, member_id) or MemberArchive(id=member_id, organization_id=organization_id)
            archive.organization_id = organization_id
            archive.name = member.name
            archive.wallet_balance = member.wallet_balance
            archive.outstanding_fines = member.outstanding_fines
            archive.reward_points = member.reward_points
            archive.archived_at = now
            db.add(archive)
            db.delete(member)
            result.dropped.append(member_id)

        store.get_config(db).last_sync_at = now

    logger.info(
        "Merged %d member(s) from %d source(s): %d created, %d updated, %d archived, skipped=%s",
        result.imported, len(result.per_source), result.created, result.updated,
        len(result.dropped), result.skipped_sources,
    )
    return result


def preview_sync(db: Session, records, organization_id: str | None = None, fresh: bool = False) -> list:
    """organization_id 소속 회원만 비교. 다른 조직의 ID는 무시한다"""
    organization_id = organization_id or config.DEFAULT_ORGANIZATION
    ids = [r.id for r in records]
    if not ids:
        return []
    query = db.query(Member).filter(Member.id.in_(ids), Member.organization_id == organization_id)
    if fresh:
        query = query.populate_existing().with_for_update()
    return detect_conflicts(records, {m.id: m for m in query.all()})


def commit_sync(db: Session, records, resolutions, actor: str = "system",
                now: datetime | None = None, organization_id: str | None = None) -> dict:
    """
    resolutions: {(회원 ID, 필드): "local" | "external"}
    해결되지 않은 충돌이 하나라도 있으면 아무것도 반영하지 않고 SyncConflictPending 발생
    """
    now = now or datetime.now()
    organization_id = organization_id or config.DEFAULT_ORGANIZATION
    _check_maintenance(db)
    for choice in resolutions.values():
        if choice not in ("local", "external"):
            raise InvalidCommand(f"Invalid resolution '{choice}', expected 'local' or 'external'.")

    with store.unit_of_work(db, organization_id):
        # 락 안에서 다시 읽은 값으로 충돌을 판정한다
        conflicts = preview_sync(db, records, organization_id, fresh=True)
        pending = [c for c in conflicts if (c.member_id, c.field) not in resolutions]
        if pending:
            raise SyncConflictPending(pending)

        applied = 0
        for conflict in conflicts:
            if resolutions[(conflict.member_id, conflict.field)] != "external":
                continue
            _apply_external(db, conflict, actor, now)
            applied += 1
        store.get_config(db).last_sync_at = now

    logger.info("Sync committed by %s: %d conflict(s), %d external value(s) applied",
                actor, len(conflicts), applied)
    return {"conflicts": len(conflicts), "applied_external": applied}


def _apply_external(db: Session, conflict: SyncConflict, actor: str, now: datetime):
    member = store.require_member(db, conflict.member_id)
    if conflict.field == "wallet_balance":
        # 잔액은 원장 합계로 유지되므로 차액을 조정 거래로 게시
        diff = conflict.external_value - member.wallet_balance
        tx_type = TransactionType.Credit if diff > 0 else TransactionType.Debit
        ledger.post_transaction(db, member.id, tx_type, diff, SYNC_ADJUSTMENT_DESCRIPTION,
                                reference=f"SYNC:{actor}", now=now)
    elif conflict.field == "outstanding_fines":
        if conflict.external_value < 0:
            raise InvalidCommand("Outstanding fines cannot be negative.")
        member.outstanding_fines = conflict.external_value
    elif conflict.field == "reward_points":
        if conflict.external_value < 0:
            raise InvalidCommand("Reward points cannot be negative.")
        member.reward_points = conflict.external_value
