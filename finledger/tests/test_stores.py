import unittest
from datetime import date, datetime
from decimal import Decimal

from finledger.db import build_engine, init_db, transaction_scope
from finledger.errors import NotFound
from finledger.models import Account, RecurringSchedule, Transaction
from finledger.stores import AccountStore, MovementStore, ScheduleStore

NOW = datetime(2024, 2, 1, 9, 30)


class StoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_engine("sqlite://")
        init_db(self.engine)
        with transaction_scope(self.engine) as conn:
            AccountStore(conn).create(
                Account(id="acc", name="Main", kind="cash", balance=Decimal("10"), currency="HUF", updated_at=NOW)
            )


class AccountStoreTests(StoreTestCase):
    def test_adjust_balance_increments_in_place(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = AccountStore(conn)
            store.adjust_balance("acc", Decimal("5.5"), NOW)
            store.adjust_balance("acc", Decimal("-2"), NOW)
            self.assertEqual(store.get("acc").balance, Decimal("13.5"))

    def test_update_balance_overwrites(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = AccountStore(conn)
            store.update_balance("acc", Decimal("99"), NOW)
            self.assertEqual(store.get("acc").balance, Decimal("99"))

    def test_missing_account(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = AccountStore(conn)
            self.assertIsNone(store.find("nope"))
            with self.assertRaises(NotFound):
                store.adjust_balance("nope", Decimal("1"), NOW)
            with self.assertRaises(NotFound):
                store.delete("nope")

    def test_update_maps_kind_and_rejects_unknown_fields(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = AccountStore(conn)
            updated = store.update("acc", {"kind": "investment", "name": "Fund"}, NOW)
            self.assertEqual(updated.kind, "investment")
            self.assertEqual(updated.name, "Fund")
            with self.assertRaises(ValueError):
                store.update("acc", {"owner": "me"}, NOW)

    def test_failed_scope_rolls_back(self) -> None:
        with self.assertRaises(NotFound):
            with transaction_scope(self.engine) as conn:
                AccountStore(conn).adjust_balance("acc", Decimal("100"), NOW)
                AccountStore(conn).get("nope")

        with transaction_scope(self.engine) as conn:
            self.assertEqual(AccountStore(conn).get("acc").balance, Decimal("10"))


class MovementStoreTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        rows = [
            Transaction(id="t1", account_id="acc", amount=Decimal("-30"), date=date(2024, 1, 5), description="Rent"),
            Transaction(id="t2", account_id="acc", amount=Decimal("-10"), date=date(2024, 1, 20), category_id="food"),
            Transaction(id="t3", account_id="acc", amount=Decimal("50"), date=date(2024, 2, 2), description="Bonus"),
            Transaction(
                id="t4", account_id="acc", amount=Decimal("-15"), date=date(2024, 2, 9),
                description="Gym", is_recurring=True,
            ),
        ]
        with transaction_scope(self.engine) as conn:
            store = MovementStore(conn)
            for row in rows:
                store.create_transaction(row)

    def test_paginates_with_allowed_sort_fields(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = MovementStore(conn)
            by_amount = store.find_paginated(0, 2, sort_by="amount", sort_order="asc")
            second_page = store.find_paginated(2, 2, sort_by="amount", sort_order="asc")
            total = store.count_transactions()

        self.assertEqual([txn.id for txn in by_amount], ["t1", "t4"])
        self.assertEqual([txn.id for txn in second_page], ["t2", "t3"])
        self.assertEqual(total, 4)

    def test_unknown_sort_field_falls_back_to_date(self) -> None:
        with transaction_scope(self.engine) as conn:
            rows = MovementStore(conn).find_paginated(0, 10, sort_by="id; drop table accounts", sort_order="desc")

        self.assertEqual([txn.id for txn in rows], ["t4", "t3", "t2", "t1"])

    def test_date_range_filters(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = MovementStore(conn)
            january = store.find_by_date_range(date(2024, 1, 1), date(2024, 1, 31))
            food = store.find_by_date_range(date(2024, 1, 1), date(2024, 12, 31), category_id="food")
            since = store.find_from_date(date(2024, 2, 1), account_id="acc")

        self.assertEqual({txn.id for txn in january}, {"t1", "t2"})
        self.assertEqual([txn.id for txn in food], ["t2"])
        self.assertEqual({txn.id for txn in since}, {"t3", "t4"})

    def test_date_pattern_matches_within_month(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = MovementStore(conn)
            rent = store.find_by_account_and_date_pattern("acc", Decimal("-30"), "Rent", date(2024, 1, 28))
            blank = store.find_by_account_and_date_pattern("acc", Decimal("-10"), None, date(2024, 1, 1))
            other_month = store.find_by_account_and_date_pattern("acc", Decimal("-30"), "Rent", date(2024, 2, 1))

        self.assertEqual(rent.id, "t1")
        self.assertEqual(blank.id, "t2")
        self.assertIsNone(other_month)

    def test_recurring_and_linked_lookups(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = MovementStore(conn)
            store.create_transaction(
                Transaction(id="t5", account_id="acc", amount=Decimal("1"), date=date(2024, 2, 1), linked_transaction_id="x")
            )
            recurring = store.find_recurring()
            linking = store.find_linking_to(["x"], exclude_account_id="other")
            excluded = store.find_linking_to(["x"], exclude_account_id="acc")

        self.assertEqual([txn.id for txn in recurring], ["t4"])
        self.assertEqual([txn.id for txn in linking], ["t5"])
        self.assertEqual(excluded, [])

    def test_delete_by_account(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = MovementStore(conn)
            store.delete_by_account("acc")
            self.assertEqual(store.list_transactions(), [])


class ScheduleStoreTests(StoreTestCase):
    def test_round_trip_and_active_filter(self) -> None:
        active = RecurringSchedule(
            id="s1", kind="transaction", frequency="daily", account_id="acc",
            amount=Decimal("-1"), category_id="x", created_at=NOW,
        )
        paused = RecurringSchedule(
            id="s2", kind="transaction", frequency="daily", account_id="acc",
            amount=Decimal("-1"), category_id="x", created_at=NOW, is_active=False,
        )
        with transaction_scope(self.engine) as conn:
            store = ScheduleStore(conn)
            store.create(active)
            store.create(paused)
            updated = store.update("s1", {"last_processed_date": date(2024, 2, 1)})
            found = store.find_active()

        self.assertEqual(updated.last_processed_date, date(2024, 2, 1))
        self.assertEqual([schedule.id for schedule in found], ["s1"])

    def test_missing_schedule(self) -> None:
        with transaction_scope(self.engine) as conn:
            store = ScheduleStore(conn)
            with self.assertRaises(NotFound):
                store.get("nope")
            with self.assertRaises(NotFound):
                store.update("nope", {"is_active": False})
            with self.assertRaises(ValueError):
                store.update("nope", {"kind": "transfer"})


if __name__ == "__main__":
    unittest.main()
