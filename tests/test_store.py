from decimal import Decimal

from backend.app.bank_integration.providers.responses import AccountBalance
from backend.app.bank_integration.store import ConnectionStore
from backend.app.models import BankAccount, BankConnection, BankConnectionStatus
from tests.fakes import make_account


def test_get_connection_is_scoped_to_provider(db):
    store = ConnectionStore(db)
    store.save_connection("user-1", "fakebank", {'access_token': "at-1"})

    assert store.get_connection("user-1", "fakebank").access_token == "at-1"
    assert store.get_connection("user-1", "otherbank") is None


def test_list_active_connections_skips_reauth(db):
    store = ConnectionStore(db)
    store.save_connection("user-1", "fakebank", {'access_token': "at", 'status': BankConnectionStatus.ACTIVE})
    store.save_connection("user-2", "fakebank", {'access_token': "at", 'status': BankConnectionStatus.ACTIVE})
    store.save_connection("user-3", "otherbank", {'access_token': "at", 'status': BankConnectionStatus.ACTIVE})
    store.mark_reauth_required(store.get_connection("user-2", "fakebank"), "Refresh failed")

    assert [c.user_id for c in store.list_active_connections()] == ["user-1", "user-3"]
    assert [c.user_id for c in store.list_active_connections("fakebank")] == ["user-1"]


def test_upsert_account_updates_in_place(db):
    store = ConnectionStore(db)
    store.upsert_account("user-1", "fakebank", make_account("acc-1", "Current Account"),
                         AccountBalance(currency="GBP", current=Decimal("10.00")))
    store.upsert_account("user-1", "fakebank", make_account("acc-1", "Renamed"), None)

    accounts = store.list_accounts("user-1", "fakebank")
    assert len(accounts) == 1
    assert accounts[0].account_name == "Renamed"
    assert accounts[0].balance == Decimal("10.00")


def test_delete_connection_removes_accounts(db):
    store = ConnectionStore(db)
    store.save_connection("user-1", "fakebank", {'access_token': "at-1"})
    store.upsert_account("user-1", "fakebank", make_account("acc-1", "Current Account"))

    assert store.delete_connection("user-1", "fakebank") is True
    assert db.query(BankConnection).count() == 0
    assert db.query(BankAccount).count() == 0
    assert store.delete_connection("user-1", "fakebank") is False
