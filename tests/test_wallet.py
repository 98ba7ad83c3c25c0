from datetime import timedelta

from onepass import store, wallet

from conftest import ON_TIME


def test_never_acknowledged_wallet_is_locked(db, make_member):
    member = make_member("VG-040")
    assert member.last_dashboard_view is None
    assert wallet.is_wallet_locked(member, ON_TIME, 60) is True
    assert wallet.unlocks_until(member, 60) is None


def test_acknowledge_unlocks_for_window_then_relocks(db, make_member):
    make_member("VG-041")

    member = wallet.acknowledge_dashboard(db, "VG-041", now=ON_TIME)

    assert member.last_dashboard_view == ON_TIME
    assert wallet.is_wallet_locked(member, ON_TIME + timedelta(minutes=59), 60) is False
    assert wallet.is_wallet_locked(member, ON_TIME + timedelta(minutes=60), 60) is True
    assert wallet.unlocks_until(member, 60) == ON_TIME + timedelta(hours=1)


def test_outstanding_fines_lock_unconditionally(db, make_member):
    make_member("VG-042", fines=200)
    member = wallet.acknowledge_dashboard(db, "VG-042", now=ON_TIME)

    assert wallet.is_wallet_locked(member, ON_TIME, 60) is True

    store.clear_fines(db, "VG-042")
    assert wallet.is_wallet_locked(store.get_member(db, "VG-042"), ON_TIME, 60) is False


def test_window_comes_from_config(db, make_member):
    make_member("VG-043")
    store.update_config(db, wallet_unlock_minutes=5)
    window = store.get_config(db).wallet_unlock_minutes
    member = wallet.acknowledge_dashboard(db, "VG-043", now=ON_TIME)

    assert wallet.is_wallet_locked(member, ON_TIME + timedelta(minutes=6), window) is True
