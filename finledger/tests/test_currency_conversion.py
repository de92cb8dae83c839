import unittest
from decimal import Decimal

from finledger.currency_conversion import (
    CompositeRateProvider,
    OpenExchangeRateProvider,
    StaticRateProvider,
    convert_to_base,
)


class CountingRateProvider(OpenExchangeRateProvider):
    def __init__(self, responses, **kwargs) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses)
        self.requested = []

    def _fetch_rates(self, base: str):
        self.requested.append(base)
        return self.responses.pop(0)


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = StaticRateProvider(
            rates={
                "USD": Decimal("1"),
                "EUR": Decimal("2"),
                "JPY": Decimal("4"),
            }
        )

    def test_same_currency_returns_original_amount(self) -> None:
        amount = convert_to_base(Decimal("12.50"), "USD", "USD", self.provider.get_rates("USD"))

        self.assertEqual(amount, Decimal("12.50"))

    def test_cross_rates_are_derived_from_usd_table(self) -> None:
        rates = self.provider.get_rates("EUR")

        self.assertEqual(rates["JPY"], Decimal("2"))
        self.assertEqual(rates["USD"], Decimal("0.5"))
        self.assertEqual(convert_to_base(Decimal("10"), "JPY", "EUR", rates), Decimal("5"))

    def test_normalizes_currency_codes(self) -> None:
        amount = convert_to_base(Decimal("6"), " jpy ", "eur", self.provider.get_rates(" eur "))

        self.assertEqual(amount, Decimal("3"))

    def test_missing_rate_leaves_amount_unconverted(self) -> None:
        amount = convert_to_base(Decimal("5"), "CAD", "USD", self.provider.get_rates("USD"))

        self.assertEqual(amount, Decimal("5"))

    def test_unknown_base_returns_empty_table(self) -> None:
        self.assertEqual(self.provider.get_rates("CAD"), {})
        self.assertEqual(self.provider.get_rates("not-a-code"), {})

    def test_default_table_includes_forint(self) -> None:
        rates = StaticRateProvider().get_rates("HUF")

        self.assertEqual(rates["HUF"], Decimal("1"))
        self.assertIn("EUR", rates)

    def test_falls_back_when_live_provider_unavailable(self) -> None:
        class UnavailableProvider:
            def get_rates(self, base_currency: str):
                return {}

        provider = CompositeRateProvider(primary=UnavailableProvider(), fallback=self.provider)

        self.assertEqual(provider.get_rates("EUR")["JPY"], Decimal("2"))

    def test_live_rates_are_cached_per_base(self) -> None:
        provider = CountingRateProvider(
            [{"USD": Decimal("1"), "EUR": Decimal("0.9")}],
            cache_ttl_seconds=3600,
        )

        first = provider.get_rates("usd")
        second = provider.get_rates("USD")

        self.assertEqual(first, second)
        self.assertEqual(provider.requested, ["USD"])

    def test_failed_fetch_is_not_cached(self) -> None:
        provider = CountingRateProvider([{}, {"HUF": Decimal("1")}])

        self.assertEqual(provider.get_rates("HUF"), {})
        self.assertEqual(provider.get_rates("HUF"), {"HUF": Decimal("1")})
        self.assertEqual(provider.requested, ["HUF", "HUF"])


if __name__ == "__main__":
    unittest.main()
