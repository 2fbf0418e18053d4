"""Tests for model pricing."""

from __future__ import annotations

import pytest

from ccstats.errors import UnknownModelWarning
from ccstats.services.pricing import ModelPricing, PricingTable, squash_model_name


class TestNormalizeModelName:
    @pytest.mark.parametrize(
        "raw",
        ["claude-sonnet-4-20250514", "sonnet-4", "claude-4-sonnet", "Claude Sonnet 4"],
    )
    def test_sonnet_4_aliases(self, pricing: PricingTable, raw: str) -> None:
        assert pricing.normalize_model_name(raw) == "claude-4-sonnet"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("claude-opus-4-20250514", "claude-4-opus"),
            ("claude-3-5-sonnet-20241022", "claude-3-5-sonnet"),
            ("claude-3.5-sonnet", "claude-3-5-sonnet"),
            ("claude-3-haiku-20240307", "claude-3-haiku"),
            ("claude-3-opus-latest", "claude-3-opus"),
            ("gemini-2.5-pro", "gemini-2.5-pro"),
        ],
    )
    def test_known_families(self, pricing: PricingTable, raw: str, expected: str) -> None:
        assert pricing.normalize_model_name(raw) == expected

    def test_unknown_model(self, pricing: PricingTable) -> None:
        assert pricing.normalize_model_name("gpt-4o") is None
        assert pricing.normalize_model_name("") is None

    def test_squash(self) -> None:
        assert squash_model_name("Claude-3.5-Sonnet") == "claude35sonnet"


class TestCalculateCost:
    def test_per_category_rates(self, pricing: PricingTable) -> None:
        cost = pricing.calculate_cost(
            "claude-opus-4-20250514",
            input_tokens=1_000_000,
            output_tokens=1_000_000,
            cache_creation_tokens=1_000_000,
            cache_read_tokens=1_000_000,
        )
        assert cost == pytest.approx(15.0 + 75.0 + 18.75 + 1.5)

    def test_cost_is_linear(self, pricing: PricingTable) -> None:
        model = "claude-sonnet-4-20250514"
        a = (120, 40, 300, 900)
        b = (7, 3_000, 0, 12)
        combined = tuple(x + y for x, y in zip(a, b, strict=True))
        assert pricing.calculate_cost(model, *combined) == pytest.approx(
            pricing.calculate_cost(model, *a) + pricing.calculate_cost(model, *b)
        )
        assert pricing.calculate_cost(model, *(3 * x for x in a)) == pytest.approx(
            3 * pricing.calculate_cost(model, *a)
        )

    def test_breakdown_sums_to_total(self, pricing: PricingTable) -> None:
        breakdown = pricing.cost_breakdown("claude-3-haiku", 1000, 2000, 3000, 4000)
        assert breakdown.input_cost == pytest.approx(0.00025)
        assert breakdown.output_cost == pytest.approx(0.0025)
        assert breakdown.total_cost == pytest.approx(
            pricing.calculate_cost("claude-3-haiku", 1000, 2000, 3000, 4000)
        )

    def test_unknown_model_costs_zero_and_warns_once(self, pricing: PricingTable) -> None:
        with pytest.warns(UnknownModelWarning, match="mystery-model"):
            assert pricing.calculate_cost("mystery-model", 1000, 1000) == 0.0
        assert "mystery-model" in pricing.unknown_models
        # Second lookup is silent.
        assert pricing.calculate_cost("mystery-model", 5, 5) == 0.0
        assert len(pricing.unknown_models) == 1

    def test_custom_table(self) -> None:
        table = PricingTable(
            pricing={"house-model": ModelPricing(input=1.0, output=2.0, cache_write=0.0, cache_read=0.0)},
            aliases={},
        )
        assert table.supported_models == ["house-model"]
        assert table.calculate_cost("house-model", 1_000_000, 1_000_000) == pytest.approx(3.0)
