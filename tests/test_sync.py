import pytest

from onepass import ledger, store, sync
from onepass.errors import InvalidCommand, MaintenanceMode, SyncConflictPending
from onepass.models import Member, MemberArchive, MemberStatus, Role

from conftest import LATE


def _snapshot(db):
    return sorted(
        (m.id, m.name, m.role.value, m.status.value, m.photo_url,
         m.wallet_balance, m.outstanding_fines, m.reward_points)
        for m in db.query(Member).all()
    )


# --- 열 찾기 ---

@pytest.mark.parametrize("header,expected", [
    (["Member ID", "Full Name"], (0, 1)),
    (["full name", "reg no"], (1, 0)),
    (["  ID ", "NAME", "Role"], (0, 1)),
    (["Image", "Member_ID", "Member Name", "Status"], (1, 2)),
])
def test_resolve_columns_aliases(header, expected):
    columns = sync.resolve_columns(header)
    assert (columns.id, columns.name) == expected


def test_resolve_columns_optional_fields():
    columns = sync.resolve_columns(["Reg No", "Full Name", "Position", "Status", "Photo URL"])
    assert (columns.role, columns.status, columns.photo) == (2, 3, 4)


def test_resolve_columns_requires_id_and_name():
    assert sync.resolve_columns(["Full Name", "Role"]) is None
    assert sync.resolve_columns(["Member ID", "Phone"]) is None
    assert sync.resolve_columns([]) is None


def test_clean_cell_strips_excel_float_ids():
    assert sync.clean_cell(20241234.0) == "20241234"
    assert sync.clean_cell(" VG-1 ") == "VG-1"
    assert sync.clean_cell(None) == ""
    assert sync.clean_cell("1.05") == "1.05"


# --- 병합 (순수 함수) ---

def test_compile_first_occurrence_wins_across_sources():
    sources = {
        "Import-MGT": [["Member ID", "Full Name"], ["VG1", "Ada"], ["VG1", "Ada Again"], ["", "No Id"]],
        "Import-NGV": [["ID", "Name"], ["VG1", "Other Ada"], ["VG2", "Bola"]],
    }

    result = sync.compile_members(sources)

    assert [(m.id, m.name, m.source) for m in result.members] == [
        ("VG1", "Ada", "Import-MGT"),
        ("VG2", "Bola", "Import-NGV"),
    ]
    assert result.duplicates == 2
    assert result.per_source == {"Import-MGT": 1, "Import-NGV": 1}


def test_compile_skips_unresolvable_source_entirely():
    sources = {
        "Import-NGG": [["Surname", "Phone"], ["Ada", "080"]],
        "Import-MAM": [["Reg No", "Full Name"], ["VG3", "Chidi"]],
        "Import-Empty": [],
    }

    result = sync.compile_members(sources)

    assert [m.id for m in result.members] == ["VG3"]
    assert result.skipped_sources == ["Import-NGG", "Import-Empty"]


def test_compile_default_role_and_status():
    sources = {
        "Import-MGT": [["Member ID", "Full Name"], ["M1", "Manager"]],
        "Import-NGV": [["Member ID", "Full Name", "Role", "Status"], ["M2", "Guest Person", "guest", "blocked"],
                       ["M3", "Someone", "Management", "Unknown"]],
    }

    members = {m.id: m for m in sync.compile_members(sources).members}

    assert members["M1"].role == Role.Staff
    assert members["M1"].status == MemberStatus.Active
    assert members["M2"].role == Role.Guest
    assert members["M2"].status == MemberStatus.Blocked
    assert members["M3"].role == Role.Member
    assert members["M3"].status == MemberStatus.Active


def test_compile_never_reads_financials_from_source():
    sources = {"Import-NGV": [["Member ID", "Full Name", "Wallet Balance"], ["VG1", "Ada", "999999"]]}
    snapshot = {"VG1": sync.Financials(5000, 200, 10)}

    member = sync.compile_members(sources, snapshot).members[0]

    assert (member.wallet_balance, member.outstanding_fines, member.reward_points) == (5000, 200, 10)


# --- 병합 (DB 반영) ---

def test_merge_preserves_financials_and_refreshes_identity(db, make_member):
    make_member("VGX", name="Old Name", role=Role.Member, wallet=5000, fines=200, points=10)
    store.set_status(db, "VGX", "Late")
    sources = {"Import-NGV": [["Member ID", "Full Name", "Role"], ["VGX", "New Name", "Staff"]]}

    result = sync.merge_sources(db, sources, organization_id="CAC_01")

    db.expire_all()
    member = store.get_member(db, "VGX")
    assert (member.wallet_balance, member.outstanding_fines, member.reward_points) == (5000, 200, 10)
    assert member.name == "New Name"
    assert member.role == Role.Staff
    assert member.status == MemberStatus.Active
    assert result.updated == 1 and result.created == 0
    assert member.wallet_balance == ledger.ledger_balance(db, "VGX")


def test_merge_creates_new_member_with_zero_financials(db):
    sources = {"Import-A": [["Member ID", "Full Name"], ["VG100", "New Person"]]}

    result = sync.merge_sources(db, sources, organization_id="CAC_01")

    member = store.get_member(db, "VG100")
    assert member.name == "New Person"
    assert (member.wallet_balance, member.outstanding_fines, member.reward_points) == (0, 0, 0)
    assert member.role == sync.default_role_for("Import-A") == Role.Member
    assert member.status == MemberStatus.Active
    assert result.created == 1
    assert store.get_config(db).last_sync_at is not None


def test_merge_is_idempotent(db, make_member):
    make_member("VG1", wallet=300)
    sources = {
        "Import-MGT": [["Member ID", "Full Name", "Photo"], ["VG1", "Ada", "http://img/1"]],
        "Import-NGV": [["Reg No", "Name", "Status"], ["VG2", "Bola", "Suspended"], ["VG1", "Dup", ""]],
    }

    sync.merge_sources(db, sources, organization_id="CAC_01")
    first = _snapshot(db)
    sync.merge_sources(db, sources, organization_id="CAC_01")
    db.expire_all()

    assert _snapshot(db) == first
    assert len(first) == 2


def test_merge_archives_dropped_members_and_restores_them(db, make_member):
    make_member("KEEP", wallet=100)
    make_member("GONE", wallet=700, points=3)

    result = sync.merge_sources(db, {"Import-NGV": [["ID", "Name"], ["KEEP", "Keeper"]]},
                                organization_id="CAC_01")

    assert result.dropped == ["GONE"]
    assert store.get_member(db, "GONE") is None
    archive = db.get(MemberArchive, "GONE")
    assert (archive.wallet_balance, archive.reward_points) == (700, 3)
    assert ledger.ledger_balance(db, "GONE") == 700

    sync.merge_sources(db, {"Import-NGV": [["ID", "Name"], ["KEEP", "Keeper"], ["GONE", "Back Again"]]},
                       organization_id="CAC_01")

    returned = store.get_member(db, "GONE")
    assert (returned.wallet_balance, returned.reward_points) == (700, 3)
    assert db.get(MemberArchive, "GONE") is None


def test_merge_does_not_touch_other_organizations(db, make_member):
    make_member("OTHER-1", organization_id="ORG_B", wallet=50)

    result = sync.merge_sources(db, {"Import-NGV": [["ID", "Name"], ["OTHER-1", "Hijack"], ["VG9", "Fine"]]},
                                organization_id="CAC_01")

    assert [m.id for m in result.members] == ["VG9"]
    other = store.get_member(db, "OTHER-1")
    assert other.organization_id == "ORG_B"
    assert other.name == "Member OTHER-1"


def test_merge_refused_in_maintenance_mode(db):
    store.update_config(db, maintenance_mode=True)
    with pytest.raises(MaintenanceMode):
        sync.merge_sources(db, {"Import-NGV": [["ID", "Name"], ["VG1", "Ada"]]})


# --- 충돌 검사 ---

CENTRAL = [
    ["Member ID", "Full Name", "Role", "Status", "Photo URL", "Wallet Balance", "Outstanding Fines", "Reward Points"],
]


def test_read_member_table_parses_financial_columns():
    records = sync.read_member_table(CENTRAL + [["VG1", "Ada", "Member", "Active", "", "1,500", 0.0, ""]])
    assert records[0].wallet_balance == 1500
    assert records[0].outstanding_fines == 0
    assert records[0].reward_points is None


def test_conflicts_halt_commit_until_resolved(db, make_member):
    make_member("VG1", name="Ada", wallet=50000)
    make_member("VG2", name="Bola", wallet=12000, fines=5000)
    records = sync.read_member_table(CENTRAL + [
        ["VG1", "Ada", "Member", "Active", "", 50000, 0, 0],
        ["VG2", "Bola", "Member", "Active", "", 15000, 5000, 0],
    ])

    conflicts = sync.preview_sync(db, records)
    assert [(c.member_id, c.field, c.local_value, c.external_value) for c in conflicts] == [
        ("VG2", "wallet_balance", 12000, 15000),
    ]

    with pytest.raises(SyncConflictPending) as exc:
        sync.commit_sync(db, records, {})
    assert exc.value.conflicts[0].member_id == "VG2"
    assert store.get_member(db, "VG2").wallet_balance == 12000


def test_external_wallet_resolution_posts_adjustment(db, make_member):
    make_member("VG2", wallet=12000)
    records = [sync.ExternalRecord(id="VG2", name="Bola", wallet_balance=15000)]

    summary = sync.commit_sync(db, records, {("VG2", "wallet_balance"): "external"}, actor="VG-001",
                               now=LATE)

    member = store.get_member(db, "VG2")
    assert summary == {"conflicts": 1, "applied_external": 1}
    assert member.wallet_balance == 15000 == ledger.ledger_balance(db, "VG2")
    adjustment = ledger.history(db, "VG2")[0]
    assert adjustment.description == "Sync Adjustment"
    assert adjustment.amount == 3000


def test_local_resolution_keeps_values(db, make_member):
    make_member("VG2", wallet=12000, points=4)
    records = [sync.ExternalRecord(id="VG2", wallet_balance=100, reward_points=9)]

    sync.commit_sync(db, records, {("VG2", "wallet_balance"): "local", ("VG2", "reward_points"): "external"})

    member = store.get_member(db, "VG2")
    assert member.wallet_balance == 12000
    assert member.reward_points == 9


def test_id_archived_by_another_organization_is_not_imported(db, make_member):
    make_member("X1", organization_id="ORG_A", wallet=700)
    sync.merge_sources(db, {"Import-NGV": [["ID", "Name"]]}, organization_id="ORG_A")
    assert db.get(MemberArchive, "X1").organization_id == "ORG_A"

    result = sync.merge_sources(db, {"Import-NGV": [["ID", "Name"], ["X1", "Taken"], ["X2", "Other"]]},
                                organization_id="ORG_B")

    assert [m.id for m in result.members] == ["X2"]
    assert store.get_member(db, "X1") is None
    assert ledger.ledger_balance(db, "X1") == 700

    # ORG_B가 다시 병합해도 보관 행과 충돌하지 않는다
    again = sync.merge_sources(db, {"Import-NGV": [["ID", "Name"], ["X1", "Taken"]]}, organization_id="ORG_B")
    assert again.dropped == ["X2"]
    assert db.get(MemberArchive, "X1").wallet_balance == 700
    assert db.get(MemberArchive, "X2").organization_id == "ORG_B"

    back = sync.merge_sources(db, {"Import-NGV": [["ID", "Name"], ["X1", "Home"]]}, organization_id="ORG_A")
    assert back.created == 1
    assert store.get_member(db, "X1").wallet_balance == 700 == ledger.ledger_balance(db, "X1")


def test_conflicts_only_cover_own_organization(db, make_member, monkeypatch):
    make_member("VG3", wallet=100)
    make_member("OB3", organization_id="ORG_B", wallet=100)
    records = [sync.ExternalRecord(id="VG3", wallet_balance=900), sync.ExternalRecord(id="OB3", wallet_balance=900)]
    taken = []
    original = store._lock_for
    monkeypatch.setattr(store, "_lock_for", lambda org: taken.append(org) or original(org))

    assert [c.member_id for c in sync.preview_sync(db, records, "CAC_01")] == ["VG3"]
    summary = sync.commit_sync(db, records, {("VG3", "wallet_balance"): "external"},
                               now=LATE, organization_id="CAC_01")

    assert summary["applied_external"] == 1
    assert taken[0] == "CAC_01"
    assert "" not in taken
    assert store.get_member(db, "OB3").wallet_balance == 100
    assert store.get_member(db, "VG3").wallet_balance == 900 == ledger.ledger_balance(db, "VG3")


def test_manual_create_respects_archive_owner(db, make_member):
    make_member("X3", organization_id="ORG_A", wallet=400)
    sync.merge_sources(db, {"Import-NGV": [["ID", "Name"]]}, organization_id="ORG_A")

    with pytest.raises(InvalidCommand):
        store.create_member(db, "X3", "Intruder", "ORG_B")
    assert db.get(MemberArchive, "X3").organization_id == "ORG_A"

    member = store.create_member(db, "X3", "Returning", "ORG_A")
    assert member.wallet_balance == 400 == ledger.ledger_balance(db, "X3")
    assert db.get(MemberArchive, "X3") is None
