import unittest
from datetime import date, datetime
from decimal import Decimal

from finledger.accounts import AccountService, BalanceSplit
from finledger.currency_conversion import StaticRateProvider
from finledger.dashboard import DashboardService
from finledger.db import build_engine, init_db, transaction_scope
from finledger.errors import InvalidArgument, NotFound
from finledger.ledger import BalanceLedger
from finledger.stores import MovementStore


def fixed_clock() -> datetime:
    return datetime(2024, 4, 10, 10, 0, 0)


class AccountServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_engine("sqlite://")
        init_db(self.engine)
        self.service = AccountService(self.engine, "HUF", clock=fixed_clock)
        self.ledger = BalanceLedger(self.engine, clock=fixed_clock)

    def transactions(self, account_id: str | None = None):
        with transaction_scope(self.engine) as conn:
            return MovementStore(conn).list_transactions(account_id)


class CreateAccountTests(AccountServiceTestCase):
    def test_defaults_to_configured_currency(self) -> None:
        account = self.service.create_account("  Wallet ", "Cash")

        self.assertEqual(account.name, "Wallet")
        self.assertEqual(account.kind, "cash")
        self.assertEqual(account.currency, "HUF")
        self.assertEqual(account.balance, Decimal("0"))

    def test_normalizes_currency_and_symbol(self) -> None:
        account = self.service.create_account(
            "Shares", "investment", currency=" usd ", symbol=" aapl ", asset_type="Stock"
        )

        stored = self.service.get_account(account.id)
        self.assertEqual(stored.currency, "USD")
        self.assertEqual(stored.symbol, "AAPL")
        self.assertEqual(stored.asset_type, "stock")

    def test_rejects_invalid_input(self) -> None:
        with self.assertRaises(InvalidArgument):
            self.service.create_account(" ", "cash")
        with self.assertRaises(InvalidArgument):
            self.service.create_account("Wallet", "credit")
        with self.assertRaises(InvalidArgument):
            self.service.create_account("Wallet", "cash", currency="EURO")
        self.assertEqual(self.service.list_accounts(), [])


class UpdateAccountTests(AccountServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.account = self.service.create_account("Checking", "cash", balance=Decimal("100"))

    def test_direct_edit_overwrites_balance(self) -> None:
        updated = self.service.update_account(self.account.id, {"balance": Decimal("120"), "name": "Main"})

        self.assertEqual(updated.balance, Decimal("120"))
        self.assertEqual(updated.name, "Main")
        self.assertEqual(self.transactions(), [])

    def test_adjustment_records_single_transaction(self) -> None:
        updated = self.service.update_account(
            self.account.id, {"balance": Decimal("150")}, adjust_with_transaction=True
        )

        self.assertEqual(updated.balance, Decimal("150"))
        [adjustment] = self.transactions(self.account.id)
        self.assertEqual(adjustment.amount, Decimal("50"))
        self.assertEqual(adjustment.description, "Balance adjustment: +50.00")
        self.assertEqual(adjustment.date, date(2024, 4, 10))

    def test_adjustment_with_splits(self) -> None:
        splits = [
            BalanceSplit(amount=Decimal("-30"), description="Groceries", category_id="food"),
            BalanceSplit(amount=Decimal("-10"), description="Parking", date=date(2024, 4, 8)),
        ]

        updated = self.service.update_account(
            self.account.id, {"balance": Decimal("60")}, adjust_with_transaction=True, splits=splits
        )

        self.assertEqual(updated.balance, Decimal("60"))
        amounts = sorted(txn.amount for txn in self.transactions(self.account.id))
        self.assertEqual(amounts, [Decimal("-30"), Decimal("-10")])

    def test_splits_must_match_difference(self) -> None:
        with self.assertRaises(InvalidArgument):
            self.service.update_account(
                self.account.id,
                {"balance": Decimal("60"), "name": "Renamed"},
                adjust_with_transaction=True,
                splits=[BalanceSplit(amount=Decimal("-30"))],
            )

        stored = self.service.get_account(self.account.id)
        self.assertEqual(stored.balance, Decimal("100"))
        self.assertEqual(stored.name, "Checking")
        self.assertEqual(self.transactions(), [])

    def test_unchanged_balance_records_nothing(self) -> None:
        self.service.update_account(self.account.id, {"balance": Decimal("100")}, adjust_with_transaction=True)

        self.assertEqual(self.transactions(), [])

    def test_rejects_unknown_fields_and_missing_accounts(self) -> None:
        with self.assertRaises(InvalidArgument):
            self.service.update_account(self.account.id, {"owner": "me"})
        with self.assertRaises(NotFound):
            self.service.update_account("missing", {"name": "x"})

    def test_rejects_empty_required_fields(self) -> None:
        for field_name in ("kind", "exclude_from_net_worth", "exclude_from_cash_balance", "balance"):
            with self.subTest(field=field_name):
                with self.assertRaises(InvalidArgument):
                    self.service.update_account(self.account.id, {field_name: None})

        stored = self.service.get_account(self.account.id)
        self.assertEqual(stored.kind, "cash")
        self.assertFalse(stored.exclude_from_net_worth)

    def test_blank_currency_keeps_existing(self) -> None:
        updated = self.service.update_account(self.account.id, {"currency": "  "})

        self.assertEqual(updated.currency, "HUF")


class DeleteAccountTests(AccountServiceTestCase):
    def test_removes_movements_and_counterpart_legs(self) -> None:
        checking = self.service.create_account("Checking", "cash", balance=Decimal("500"))
        savings = self.service.create_account("Savings", "cash", balance=Decimal("0"))
        fund = self.service.create_account("Fund", "investment", asset_type="manual")
        self.ledger.record_transaction(checking.id, Decimal("-20"), date(2024, 4, 1))
        self.ledger.create_transfer(checking.id, savings.id, Decimal("100"), Decimal("100"), date(2024, 4, 2))
        self.ledger.create_transfer(
            checking.id, fund.id, Decimal("50"), Decimal("5"), date(2024, 4, 3), price=Decimal("10")
        )

        self.service.delete_account(checking.id)

        with self.assertRaises(NotFound):
            self.service.get_account(checking.id)
        self.assertEqual(self.transactions(), [])
        self.assertEqual(self.ledger.list_investment_transactions(), [])
        self.assertEqual(self.service.get_account(savings.id).balance, Decimal("0"))
        self.assertEqual(self.service.get_account(fund.id).balance, Decimal("0"))

    def test_deleting_investment_account_removes_incoming_transfer_legs(self) -> None:
        checking = self.service.create_account("Checking", "cash", balance=Decimal("500"))
        fund = self.service.create_account("Fund", "investment", asset_type="manual")
        self.ledger.create_transfer(
            checking.id, fund.id, Decimal("50"), Decimal("5"), date(2024, 4, 3), price=Decimal("10")
        )

        self.service.delete_account(fund.id)

        self.assertEqual(self.transactions(), [])
        self.assertEqual(self.service.get_account(checking.id).balance, Decimal("500"))

    def test_missing_account(self) -> None:
        with self.assertRaises(NotFound):
            self.service.delete_account("missing")


class TransactionListingTests(AccountServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.account = self.service.create_account("Checking", "cash")
        for day in range(1, 26):
            self.ledger.record_transaction(self.account.id, Decimal(-day), date(2024, 3, day))

    def test_page_meta(self) -> None:
        last = self.service.list_transactions_page(page=3, limit=10)
        first = self.service.list_transactions_page()

        self.assertEqual(len(last.data), 5)
        self.assertEqual(last.meta.total, 25)
        self.assertEqual(last.meta.total_pages, 3)
        self.assertFalse(last.meta.has_next)
        self.assertTrue(last.meta.has_prev)
        self.assertEqual(len(first.data), 20)
        self.assertEqual(first.data[0].date, date(2024, 3, 25))
        self.assertTrue(first.meta.has_next)
        self.assertFalse(first.meta.has_prev)

    def test_rejects_out_of_range_paging(self) -> None:
        with self.assertRaises(InvalidArgument):
            self.service.list_transactions_page(page=0)
        with self.assertRaises(InvalidArgument):
            self.service.list_transactions_page(limit=101)

    def test_date_range(self) -> None:
        rows = self.service.transactions_in_range(date(2024, 3, 10), date(2024, 3, 12), account_id=self.account.id)

        self.assertEqual(sorted(txn.date.day for txn in rows), [10, 11, 12])
        with self.assertRaises(InvalidArgument):
            self.service.transactions_in_range(date(2024, 3, 12), date(2024, 3, 10))

    def test_transactions_since(self) -> None:
        rows = self.service.transactions_since(date(2024, 3, 23), account_id=self.account.id)

        self.assertEqual(sorted(txn.date.day for txn in rows), [23, 24, 25])
        self.assertEqual(self.service.transactions_since(date(2024, 3, 23), account_id="other"), [])


class NetWorthTests(AccountServiceTestCase):
    def test_sums_cash_accounts_in_master_currency(self) -> None:
        self.service.create_account("Forint", "cash", balance=Decimal("3550"), currency="HUF")
        self.service.create_account("Dollars", "cash", balance=Decimal("10"), currency="USD")
        self.service.create_account("Hidden", "cash", balance=Decimal("999"), exclude_from_net_worth=True)
        self.service.create_account("Shares", "investment", balance=Decimal("7"), currency="USD")
        dashboard = DashboardService(self.engine, StaticRateProvider(), "HUF")

        result = dashboard.net_worth()

        self.assertEqual(result.currency, "HUF")
        self.assertAlmostEqual(result.total, Decimal("7100"), places=6)
        self.assertTrue(result.rates_fetched)
        self.assertEqual(result.accounts_counted, 2)

    def test_missing_rates_count_unconverted(self) -> None:
        self.service.create_account("Dollars", "cash", balance=Decimal("10"), currency="USD")
        dashboard = DashboardService(self.engine, None, "HUF")

        result = dashboard.net_worth("huf")

        self.assertEqual(result.total, Decimal("10"))
        self.assertFalse(result.rates_fetched)

    def test_spending_estimate_reads_stores(self) -> None:
        account = self.service.create_account("Checking", "cash")
        self.ledger.record_transaction(account.id, Decimal("-40"), date(2024, 3, 5))
        dashboard = DashboardService(self.engine, StaticRateProvider(), "HUF")

        result = dashboard.spending_estimate("month", date(2024, 4, 10))

        self.assertEqual(result.currency, "HUF")
        self.assertEqual(result.estimate_amount, Decimal("40"))
        with self.assertRaises(InvalidArgument):
            dashboard.spending_estimate("month", date(2024, 4, 10), currency="EURO")


if __name__ == "__main__":
    unittest.main()
