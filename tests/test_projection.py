"""
Tests for the multi-year projector: 3 future years and the 3-year lookback.
"""

from types import MappingProxyType

import pytest

from app.schemas import AssessmentInput
from app.engine_settings import EngineSettings, LookbackPolicy
from app.state_credits import StateCreditRow, StateCreditTable
from app.credit_engine import (
    calculate_assessment,
    claimed_lookback_offsets,
    effective_growth_rate,
    PERIOD_FUTURE,
    PERIOD_LOOKBACK,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def state_table():
    return StateCreditTable(version="test", rows=MappingProxyType({
        "NV": StateCreditRow(code="NV", name="Nevada", rate=0.0, method="none", available=False),
    }))


@pytest.fixture
def first_year_company():
    return AssessmentInput(
        tax_year=2024,
        business_state="NV",
        annual_revenue=5_000_000,
        total_annual_wages=1_000_000,
        rd_wage_percentage=50,
        qualifying_activity_years=0,
        annual_growth_rate=0,
    )


@pytest.fixture
def established_company():
    """Four years of history, no fees, so QRE is wage-only."""
    return AssessmentInput(
        tax_year=2024,
        business_state="NV",
        annual_revenue=2_000_000,
        total_annual_wages=1_000_000,
        rd_wage_percentage=50,
        qualifying_activity_years=3,
        prior_year_1_revenue=2_000_000, prior_year_1_wages=1_000_000,
        prior_year_2_revenue=2_000_000, prior_year_2_wages=1_000_000,
        prior_year_3_revenue=2_000_000, prior_year_3_wages=1_000_000,
        prior_year_4_revenue=2_000_000, prior_year_4_wages=1_000_000,
        federal_fee_rate=0,
        state_fee_rate=0,
    )


# =============================================================================
# FUTURE YEARS
# =============================================================================

class TestFutureProjection:

    def test_three_future_years(self, first_year_company, state_table):
        result = calculate_assessment(first_year_company, state_table=state_table)
        assert [y.year for y in result.future_years] == [2025, 2026, 2027]
        assert [y.offset for y in result.future_years] == [1, 2, 3]
        assert all(y.period == PERIOD_FUTURE for y in result.future_years)

    def test_growth_floor_applied(self, first_year_company, state_table):
        result = calculate_assessment(first_year_company, state_table=state_table)
        assert result.effective_growth_rate == 5.0
        assert result.future_years[0].revenue == pytest.approx(5_250_000.0)
        assert result.future_years[2].revenue == pytest.approx(5_000_000 * 1.05 ** 3, abs=0.01)
        assert any("below the 5.0% minimum" in w for w in result.warnings)

    def test_growth_above_floor_used(self, first_year_company, state_table):
        assessment = first_year_company.copy(update={"annual_growth_rate": 10})
        result = calculate_assessment(assessment, state_table=state_table)
        assert result.effective_growth_rate == 10
        assert result.future_years[0].wages == pytest.approx(1_100_000.0)

    def test_floor_from_settings(self, first_year_company, state_table):
        result = calculate_assessment(first_year_company, settings=EngineSettings(growth_rate_floor=8.0), state_table=state_table)
        assert result.future_years[0].revenue == pytest.approx(5_400_000.0)

    @pytest.mark.parametrize("settings", [
        EngineSettings.from_dict({"growth_rate_floor": 2}),
        EngineSettings(growth_rate_floor=2.0),
    ])
    def test_settings_cannot_lower_growth_floor(self, first_year_company, settings, state_table):
        assessment = first_year_company.copy(update={"annual_growth_rate": 2})
        result = calculate_assessment(assessment, settings=settings, state_table=state_table)
        assert result.effective_growth_rate == 5.0
        assert result.future_years[0].revenue == pytest.approx(5_250_000.0)
        assert any("below the 5.0% minimum" in w for w in result.warnings)

    def test_spend_compounds(self, first_year_company, state_table):
        assessment = first_year_company.copy(update={"supply_expenses": 100_000, "contract_research": 100_000})
        result = calculate_assessment(assessment, state_table=state_table)
        year1 = result.future_years[0]
        assert year1.supply_qre == pytest.approx(105_000.0)
        assert year1.contract_research_qre == pytest.approx(68_250.0)

    def test_activity_years_advance(self, first_year_company, state_table):
        result = calculate_assessment(first_year_company, state_table=state_table)
        assert result.current_year.asc_rate == 0.06
        assert [y.asc_rate for y in result.future_years] == [0.14, 0.14, 0.14]

    def test_first_future_year_uses_current_as_history(self, first_year_company, state_table):
        result = calculate_assessment(first_year_company, state_table=state_table)
        current = result.current_year
        year1 = result.future_years[0]

        assert current.total_qre == 525_025.0
        assert year1.average_prior_qre == current.total_qre
        assert year1.total_qre == pytest.approx(551_276.25)
        # 14% x (551,276.25 - 50% x 525,025)
        assert year1.asc_credit == pytest.approx(40_426.925, abs=0.01)

    def test_rolling_timeline(self, first_year_company, state_table):
        result = calculate_assessment(first_year_company, state_table=state_table)
        current, year1, year2 = result.current_year, result.future_years[0], result.future_years[1]
        expected = (year1.total_qre + current.total_qre) / 2
        assert year2.average_prior_qre == pytest.approx(expected, abs=0.01)

    def test_traditional_in_future_with_history(self, established_company, state_table):
        result = calculate_assessment(established_company, state_table=state_table)
        year1 = result.future_years[0]
        # base 3% x 2,000,000; 20% x (525,000 - 60,000)
        assert year1.traditional_available is True
        assert year1.traditional_credit == pytest.approx(93_000.0)
        assert year1.best_method == "Traditional"

    def test_effective_growth_rate(self):
        assert effective_growth_rate(2.0, 5.0) == 5.0
        assert effective_growth_rate(2.0, 2.0) == 5.0
        assert effective_growth_rate(2.0) == 5.0
        assert effective_growth_rate(12.5, 5.0) == 12.5
        assert effective_growth_rate(-4.0, 5.0) == 5.0


# =============================================================================
# LOOKBACK
# =============================================================================

class TestLookback:

    def test_all_three_years(self, established_company, state_table):
        result = calculate_assessment(established_company, state_table=state_table)
        assert [y.year for y in result.lookback_years] == [2023, 2022, 2021]
        assert [y.offset for y in result.lookback_years] == [-1, -2, -3]
        assert all(y.period == PERIOD_LOOKBACK for y in result.lookback_years)
        assert result.can_lookback is True

    def test_activity_years_step_back(self, established_company, state_table):
        result = calculate_assessment(established_company, state_table=state_table)
        # qualifying years 2, 1, 0 for the three lookback years
        assert [y.asc_rate for y in result.lookback_years] == [0.14, 0.14, 0.06]

    def test_wage_only_qre(self, established_company, state_table):
        assessment = established_company.copy(update={
            "supply_expenses": 50_000,
            "contract_research": 50_000,
            "federal_fee_rate": 0.75,
            "state_fee_rate": 0.25,
        })
        result = calculate_assessment(assessment, state_table=state_table)
        for year in result.lookback_years:
            assert year.supply_qre == 0.0
            assert year.contract_research_qre == 0.0
            assert year.service_fee_qre == 0.0
            assert year.total_qre == 500_000.0

    def test_skips_year_without_data(self, established_company, state_table):
        assessment = established_company.copy(update={"prior_year_2_revenue": 0, "prior_year_2_wages": 0})
        result = calculate_assessment(assessment, state_table=state_table)
        assert [y.year for y in result.lookback_years] == [2023, 2021]

    def test_most_recent_policy(self, established_company, state_table):
        assessment = established_company.copy(update={"rd_credit_years_previously_claimed": 1})
        result = calculate_assessment(assessment, state_table=state_table)
        assert [y.year for y in result.lookback_years] == [2022, 2021]

    def test_oldest_policy(self, established_company, state_table):
        assessment = established_company.copy(update={"rd_credit_years_previously_claimed": 1})
        result = calculate_assessment(assessment, state_table=state_table, lookback_policy=LookbackPolicy.OLDEST)
        assert [y.year for y in result.lookback_years] == [2023, 2022]

    def test_policy_from_settings(self, established_company, state_table):
        assessment = established_company.copy(update={"rd_credit_years_previously_claimed": 2})
        settings = EngineSettings(lookback_policy=LookbackPolicy.OLDEST)
        result = calculate_assessment(assessment, settings=settings, state_table=state_table)
        assert [y.year for y in result.lookback_years] == [2023]

    def test_explicit_claimed_years(self, established_company, state_table):
        assessment = established_company.copy(update={
            "rd_credit_years_previously_claimed": 3,
            "claimed_tax_years": [2022],
        })
        result = calculate_assessment(assessment, state_table=state_table)
        assert [y.year for y in result.lookback_years] == [2023, 2021]

    def test_all_claimed(self, established_company, state_table):
        assessment = established_company.copy(update={"rd_credit_years_previously_claimed": 3})
        result = calculate_assessment(assessment, state_table=state_table)
        assert result.lookback_years == ()
        assert result.can_lookback is False
        assert result.lookback_total == 0.0

    def test_claimed_offsets(self, established_company):
        assessment = established_company.copy(update={"rd_credit_years_previously_claimed": 2})
        assert claimed_lookback_offsets(assessment, 2024, LookbackPolicy.MOST_RECENT) == {1, 2}
        assert claimed_lookback_offsets(assessment, 2024, LookbackPolicy.OLDEST) == {3, 2}

    def test_claimed_years_outside_window_ignored(self, established_company):
        assessment = established_company.copy(update={"claimed_tax_years": [2019, 2024, 2023]})
        assert claimed_lookback_offsets(assessment, 2024, LookbackPolicy.MOST_RECENT) == {1}

    def test_no_recent_history_means_no_lookback(self, established_company, state_table):
        # Only the fourth prior year has data; it feeds the base, never a lookback year
        assessment = established_company.copy(update={
            "prior_year_1_revenue": 0, "prior_year_1_wages": 0,
            "prior_year_2_revenue": 0, "prior_year_2_wages": 0,
            "prior_year_3_revenue": 0, "prior_year_3_wages": 0,
        })
        result = calculate_assessment(assessment, state_table=state_table)
        assert result.can_lookback is False
        assert result.lookback_years == ()
        assert result.lookback_total == 0.0
        data = result.to_dict()
        assert data["canLookback"] is False
        assert data["lookback"]["total"] == 0.0
