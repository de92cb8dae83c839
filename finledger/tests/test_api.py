import unittest
from decimal import Decimal

from fastapi.testclient import TestClient

from finledger.currency_conversion import StaticRateProvider
from finledger.db import build_engine, init_db
from finledger.errors import RateLimited
from finledger.main import create_app
from finledger.settings import Settings


class ThrottledQuoteProvider:
    def get_quote(self, symbol, on=None):
        raise RateLimited("Quote provider is rate-limiting.")


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine("sqlite://")
        init_db(engine)
        app = create_app(
            settings=Settings(database_url="sqlite://", default_currency="HUF", log_json=False),
            engine=engine,
            quote_provider=ThrottledQuoteProvider(),
            rate_provider=StaticRateProvider(),
        )
        self.client = TestClient(app)

    def create_account(self, **payload) -> dict:
        response = self.client.post("/accounts", json=payload)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_module_import_builds_no_app(self) -> None:
        import finledger.main as main_module

        self.assertFalse(hasattr(main_module, "app"))
        self.assertTrue(callable(main_module.serve))

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_account_lifecycle(self) -> None:
        account = self.create_account(name="Wallet", type="cash", balance=25)
        self.assertEqual(account["currency"], "HUF")

        updated = self.client.put(
            f"/accounts/{account['id']}", json={"balance": 40, "adjust_with_transaction": True}
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(Decimal(updated.json()["balance"]), Decimal("40"))

        listing = self.client.get("/transactions").json()
        self.assertEqual(listing["meta"]["total"], 1)
        self.assertEqual(listing["data"][0]["description"], "Balance adjustment: +15.00")

        self.assertEqual(self.client.delete(f"/accounts/{account['id']}").status_code, 200)
        self.assertEqual(self.client.get(f"/accounts/{account['id']}").status_code, 404)

    def test_invalid_account_payload(self) -> None:
        response = self.client.post("/accounts", json={"name": "Card", "type": "credit"})

        self.assertEqual(response.status_code, 400)

    def test_transaction_updates_balance(self) -> None:
        account = self.create_account(name="Wallet", type="cash", balance=100)

        created = self.client.post(
            "/transactions",
            json={"account_id": account["id"], "amount": -30, "date": "2024-03-01", "description": " Lunch "},
        )
        self.assertEqual(created.status_code, 200, created.text)
        self.assertEqual(created.json()["description"], "Lunch")

        txn_id = created.json()["id"]
        changed = self.client.put(f"/transactions/{txn_id}", json={"amount": -50})
        self.assertEqual(changed.status_code, 200, changed.text)
        balance = self.client.get(f"/accounts/{account['id']}").json()["balance"]
        self.assertEqual(Decimal(balance), Decimal("50"))

        self.assertEqual(self.client.delete(f"/transactions/{txn_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/transactions/{txn_id}").status_code, 404)

    def test_unknown_account_is_not_found(self) -> None:
        response = self.client.post(
            "/transactions", json={"account_id": "missing", "amount": 1, "date": "2024-03-01"}
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"], "Account not found.")

    def test_cross_currency_transfer(self) -> None:
        forint = self.create_account(name="Forint", type="cash", balance=1000)
        euro = self.create_account(name="Euro", type="cash", currency="eur")

        response = self.client.post(
            "/transfers",
            json={
                "from_account_id": forint["id"],
                "to_account_id": euro["id"],
                "amount_from": 100,
                "amount_to": 0.26,
                "date": "2024-03-01",
            },
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(self.client.get(f"/accounts/{forint['id']}").json()["balance"]), Decimal("900"))
        self.assertEqual(Decimal(self.client.get(f"/accounts/{euro['id']}").json()["balance"]), Decimal("0.26"))

    def test_rate_limited_quote_maps_to_429(self) -> None:
        cash = self.create_account(name="Cash", type="cash", balance=100)
        shares = self.create_account(name="ACME", type="investment", symbol="acme", asset_type="stock")

        response = self.client.post(
            "/transfers",
            json={
                "from_account_id": cash["id"],
                "to_account_id": shares["id"],
                "amount_from": 50,
                "amount_to": 1,
                "date": "2024-03-01",
            },
        )

        self.assertEqual(response.status_code, 429)
        self.assertEqual(Decimal(self.client.get(f"/accounts/{cash['id']}").json()["balance"]), Decimal("100"))

    def test_manual_asset_without_price_maps_to_422(self) -> None:
        art = self.create_account(name="Art", type="investment", asset_type="manual")

        response = self.client.post(
            "/transactions", json={"account_id": art["id"], "amount": 1, "date": "2024-03-01"}
        )

        self.assertEqual(response.status_code, 422)

    def test_investment_transactions(self) -> None:
        shares = self.create_account(name="ACME", type="investment", symbol="acme", asset_type="stock")

        created = self.client.post(
            "/investment-transactions",
            json={"account_id": shares["id"], "type": "BUY", "quantity": 3, "price": 10, "date": "2024-03-01"},
        )
        self.assertEqual(created.status_code, 200, created.text)
        self.assertEqual(created.json()["type"], "buy")
        listed = self.client.get("/investment-transactions", params={"account_id": shares["id"]}).json()
        self.assertEqual(len(listed), 1)

        deleted = self.client.delete(f"/investment-transactions/{created.json()['id']}")
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(Decimal(self.client.get(f"/accounts/{shares['id']}").json()["balance"]), Decimal("0"))

    def test_exchange_rate(self) -> None:
        ok = self.client.get("/exchange-rate", params={"from": "usd", "to": "eur"})
        missing = self.client.get("/exchange-rate", params={"from": "USD", "to": "XYZ"})

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(Decimal(ok.json()["rate"]), Decimal("0.92"))
        self.assertEqual(missing.status_code, 422)

    def test_recurring_schedule_processing(self) -> None:
        account = self.create_account(name="Wallet", type="cash", balance=100)
        created = self.client.post(
            "/recurring-schedules",
            json={
                "type": "transaction",
                "frequency": "monthly",
                "account_id": account["id"],
                "amount": -10,
                "day_of_month": 31,
                "category_id": "rent",
            },
        )
        self.assertEqual(created.status_code, 200, created.text)

        report = self.client.post("/recurring-schedules/process", params={"run_date": "2023-02-28"}).json()
        again = self.client.post("/recurring-schedules/process", params={"run_date": "2023-02-28"}).json()

        self.assertEqual(report["fired"], [created.json()["id"]])
        self.assertEqual(again["fired"], [])
        schedule = self.client.get(f"/recurring-schedules/{created.json()['id']}").json()
        self.assertEqual(schedule["last_processed_date"], "2023-02-28")

        paused = self.client.put(f"/recurring-schedules/{created.json()['id']}", json={"is_active": False})
        self.assertFalse(paused.json()["is_active"])
        self.assertEqual(self.client.delete(f"/recurring-schedules/{created.json()['id']}").status_code, 200)
        self.assertEqual(self.client.get("/recurring-schedules").json(), [])

    def test_invalid_schedule_is_rejected(self) -> None:
        account = self.create_account(name="Wallet", type="cash")

        response = self.client.post(
            "/recurring-schedules",
            json={"type": "transaction", "frequency": "weekly", "account_id": account["id"], "amount": -1},
        )

        self.assertEqual(response.status_code, 400)

    def test_null_required_fields_are_rejected(self) -> None:
        account = self.create_account(name="Wallet", type="cash")
        schedule = self.client.post(
            "/recurring-schedules",
            json={
                "type": "transaction",
                "frequency": "daily",
                "account_id": account["id"],
                "amount": -1,
                "category_id": "coffee",
            },
        ).json()

        for body in ({"amount": None}, {"frequency": None}, {"is_active": None}):
            with self.subTest(body=body):
                response = self.client.put(f"/recurring-schedules/{schedule['id']}", json=body)
                self.assertEqual(response.status_code, 400)
        response = self.client.put(f"/accounts/{account['id']}", json={"type": None})
        self.assertEqual(response.status_code, 400)

    def test_transactions_since(self) -> None:
        account = self.create_account(name="Wallet", type="cash")
        for day in ("2024-03-01", "2024-03-15"):
            self.client.post("/transactions", json={"account_id": account["id"], "amount": -1, "date": day})

        response = self.client.get("/transactions/since", params={"start_date": "2024-03-10"})

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual([txn["date"] for txn in response.json()], ["2024-03-15"])

    def test_pagination_limits(self) -> None:
        self.assertEqual(self.client.get("/transactions", params={"limit": 0}).status_code, 400)
        self.assertEqual(self.client.get("/transactions", params={"page": 0}).status_code, 400)

    def test_dashboard(self) -> None:
        self.create_account(name="Wallet", type="cash", balance=355)

        net_worth = self.client.get("/dashboard/net-worth").json()
        estimate = self.client.get("/dashboard/spending-estimate", params={"period": "week"})
        invalid = self.client.get("/dashboard/spending-estimate", params={"period": "year"})

        self.assertEqual(net_worth["currency"], "HUF")
        self.assertEqual(Decimal(net_worth["total"]), Decimal("355"))
        self.assertEqual(estimate.status_code, 200, estimate.text)
        self.assertEqual(estimate.json()["period"], "week")
        self.assertEqual(invalid.status_code, 400)


if __name__ == "__main__":
    unittest.main()
