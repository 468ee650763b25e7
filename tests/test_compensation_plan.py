# tests/test_compensation_plan.py
"""
Compensation plan validation and loading.

Run:
    pytest tests/test_compensation_plan.py -v
"""
import copy
from decimal import Decimal

import pytest

from config import Config
from mlm_system.config.plan import (
    DEFAULT_PLAN,
    COMPENSATION_PLAN,
    loadCompensationPlan,
    reset_plan_cache,
)
from mlm_system.errors import PlanValidationError
from mlm_system.validation.compensation_plan import (
    calculateMaxPayout,
    calculateTotalPositions,
    firstError,
    validateCommissionRates,
    validateCompensationPlan,
    validateMatrixSettings,
)


def plan_settings(**commissions):
    settings = copy.deepcopy(DEFAULT_PLAN)
    settings["commissions"].update(commissions)
    return settings


class TestPayoutCeiling:

    def test_reference_plan_exceeds_hundred_percent(self):
        settings = plan_settings()

        assert calculateMaxPayout(settings) == Decimal("107")

        result = validateCompensationPlan(settings)
        assert not result.isValid
        assert firstError(result) == (
            "Total potential payout (107.00%) exceeds 100% - this plan is mathematically impossible"
        )

    def test_high_but_possible_plan_passes_with_warning(self):
        result = validateCompensationPlan(plan_settings(matchingLevels=3))

        assert result.isValid
        assert "High total payout percentage (87.00%) may not be sustainable" in result.warnings

    def test_exactly_hundred_percent_is_allowed(self):
        result = validateCompensationPlan(plan_settings(matchingPercentage=10, matchingLevels=4, retail=28))
        assert calculateMaxPayout(plan_settings(matchingLevels=4, retail=28)) == Decimal("100")
        assert result.isValid

    def test_modest_plan_has_no_payout_warning(self):
        result = validateCompensationPlan(plan_settings(matchingLevels=1))
        assert result.isValid
        assert not any("payout" in w for w in result.warnings)

    def test_level_count_mismatch_warns(self):
        result = validateCompensationPlan(plan_settings(matrixLevels=[10, 5, 5], matchingLevels=2))
        assert result.isValid
        assert "Matrix depth (9) doesn't match number of commission levels (3)" in result.warnings


class TestMatrixSettings:

    def test_total_positions(self):
        assert calculateTotalPositions(5, 9) == 2441405
        assert calculateTotalPositions(2, 3) == 14

    @pytest.mark.parametrize("width,message", [
        (1, "Matrix width must be at least 2"),
        (11, "Matrix width cannot exceed 10"),
        (2.5, "Matrix width must be a whole number"),
        (True, "Matrix width must be a whole number"),
    ])
    def test_width_bounds(self, width, message):
        result = validateMatrixSettings({"width": width, "depth": 9})
        assert message in result.errors

    @pytest.mark.parametrize("depth,message", [
        (0, "Matrix depth must be at least 1"),
        (16, "Matrix depth cannot exceed 15 levels"),
        (None, "Matrix depth must be a whole number"),
    ])
    def test_depth_bounds(self, depth, message):
        result = validateMatrixSettings({"width": 5, "depth": depth})
        assert message in result.errors

    def test_large_matrix_warnings(self):
        result = validateMatrixSettings({"width": 7, "depth": 10})
        assert result.isValid
        assert "Large matrix widths may slow down spillover calculations" in result.warnings
        assert "Deep matrices may have very large downlines" in result.warnings
        assert any("Consider reducing width or depth" in w for w in result.warnings)


class TestCommissionRates:

    def test_rates_out_of_range(self):
        result = validateCommissionRates({
            "retail": 101,
            "matrixLevels": [10, -1],
            "matchingPercentage": "ten",
            "matchingLevels": 11,
        })

        assert "Retail commission cannot exceed 100%" in result.errors
        assert "Matrix level 2 percentage cannot be negative" in result.errors
        assert "Matching percentage must be a number" in result.errors
        assert "Matching levels cannot exceed 10" in result.errors

    def test_matrix_levels_required(self):
        result = validateCommissionRates({
            "retail": 25, "matrixLevels": [], "matchingPercentage": 10, "matchingLevels": 5,
        })
        assert "At least one matrix level is required" in result.errors

    def test_too_many_matrix_levels(self):
        result = validateCommissionRates({
            "retail": 5, "matrixLevels": [1] * 16, "matchingPercentage": 0, "matchingLevels": 0,
        })
        assert "Cannot have more than 15 matrix levels" in result.errors

    def test_retail_warnings(self):
        low = validateCommissionRates(plan_settings(retail=5)["commissions"])
        high = validateCommissionRates(plan_settings(retail=60)["commissions"])
        assert "Low retail commission may not motivate distributors" in low.warnings
        assert "High retail commission may impact profitability" in high.warnings

    def test_rank_bonus_checks(self):
        result = validateCommissionRates(plan_settings(rankBonuses={
            "bronze": -1, "silver": "lots", "presidential": 250000,
        })["commissions"])

        assert "Rank bonus for bronze cannot be negative" in result.errors
        assert "Rank bonus for silver must be a number" in result.errors
        assert "Very high rank bonus for presidential ($250,000)" in result.warnings

    def test_individual_errors_skip_total_check(self):
        result = validateCompensationPlan(plan_settings(retail=150))
        assert result.errors == ["Retail commission cannot exceed 100%"]


class TestPlanLoading:

    def test_reference_plan_loads(self):
        plan = loadCompensationPlan()

        assert (plan.width, plan.depth) == (5, 9)
        assert plan.retailRate == Decimal("0.25")
        assert plan.matrixRate(1) == Decimal("0.1")
        assert plan.matrixLevelCount == 9
        assert plan.matchingLevels == 5
        assert plan.rankBonuses["bronze"] == Decimal("100")

    def test_valid_override(self):
        Config.set(Config.COMPENSATION_PLAN, {"commissions": {"matchingLevels": 3}})

        plan = loadCompensationPlan()

        assert plan.matchingLevels == 3
        assert plan.retailPercentage == Decimal("25")

    def test_invalid_override_is_rejected(self):
        Config.set(Config.COMPENSATION_PLAN, {"matrix": {"width": 12}})

        with pytest.raises(PlanValidationError) as excinfo:
            loadCompensationPlan()

        assert "Matrix width cannot exceed 10" in excinfo.value.errors

    def test_override_above_hundred_percent_is_rejected(self):
        Config.set(Config.COMPENSATION_PLAN, {"commissions": {"retail": 30}})

        with pytest.raises(PlanValidationError):
            loadCompensationPlan()

    def test_plan_is_cached_until_reset(self):
        first = COMPENSATION_PLAN()
        Config.set(Config.COMPENSATION_PLAN, {"commissions": {"matchingLevels": 2}})
        assert COMPENSATION_PLAN() is first

        reset_plan_cache()
        assert COMPENSATION_PLAN().matchingLevels == 2

    def test_settings_round_trip_through_validator(self):
        plan = loadCompensationPlan()
        assert calculateMaxPayout(plan.toSettings()) == Decimal("107")
