"""
Credit Calculation Engine
Turns an assessment snapshot into a complete R&D credit determination:
current-year credit, best method (ASC vs Traditional), a 3-year forward
projection, a 3-year lookback opportunity, and the fee/ROI summary.

Pipeline:
    eligibility -> QRE (current year) -> credit methods (current year)
    -> projection (future + lookback, re-running QRE + methods per year)
    -> summary

Pure and synchronous: no I/O, no module-level mutable state. Callers that
recompute on every edit should go through CalculationCache.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional, List, Sequence, Set, Tuple

from app.engine_settings import EngineSettings, LookbackPolicy, MIN_GROWTH_RATE_FLOOR
from app.schemas import AssessmentInput, DISQUALIFIER_SENTINEL
from app.state_credits import StateCreditRow, StateCreditTable, load_state_credit_table

logger = logging.getLogger(__name__)

# ============================================================================
# Credit Computation Constants
# ============================================================================

# ASC Credit (14% of QRE over 50% of the prior 3-year average)
ASC_CREDIT_RATE = 0.14
ASC_BASE_PERCENTAGE = 0.50

# ASC rate when there is no prior R&D history
ASC_FIRST_YEAR_RATE = 0.06

# Traditional (Regular) Credit: 20% of QRE over the base amount
REGULAR_CREDIT_RATE = 0.20
REGULAR_BASE_CAP_PERCENTAGE = 0.50

# Contract Research - 65% rule
CONTRACT_QRE_RATE = 0.65
SUPPLY_QRE_RATE = 1.0

# Share of the advisory/cloud service fee that counts as QRE
SERVICE_FEE_QRE_RATE = 0.77

# Preliminary effective credit rate used to price the service fee
PRELIMINARY_EFFECTIVE_RATE = 0.065

HISTORY_YEARS = 3
PROJECTION_YEARS = 3
LOOKBACK_YEARS = 3
MAX_ACTIVITY_YEARS = 3

SCORE_PER_ACTIVITY = 10
MAX_QUALIFICATION_SCORE = 100
LOW_RD_ALLOCATION_PERCENT = 15

# Qualified Small Business payroll election
QSB_GROSS_RECEIPTS_LIMIT = 5_000_000
QSB_MAX_BUSINESS_AGE = 5
QSB_PAYROLL_OFFSET_CAP = 500_000

METHOD_ASC = "ASC"
METHOD_TRADITIONAL = "Traditional"

PERIOD_CURRENT = "current"
PERIOD_FUTURE = "future"
PERIOD_LOOKBACK = "lookback"


def _money(value: float) -> float:
    """Round to the cent, never negative."""
    return round(max(0.0, value), 2)


def _ratio(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, 4)


def clamp_percentage(value: float) -> float:
    return min(100.0, max(0.0, value))


# ============================================================================
# Data Classes
# ============================================================================

@dataclass(frozen=True)
class EligibilityResult:
    is_qualified: bool
    has_disqualifier: bool
    qualification_score: int
    disqualifiers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QREBreakdown:
    """QRE components for one year"""
    qualified_wages: float = 0.0
    contract_research_qre: float = 0.0
    supply_qre: float = 0.0
    service_fee_baseline: float = 0.0
    service_fee_qre: float = 0.0
    total_qre: float = 0.0

    @property
    def pre_fee_qre(self) -> float:
        return round(self.qualified_wages + self.contract_research_qre + self.supply_qre, 2)


@dataclass(frozen=True)
class PriorYear:
    """One year of history as seen by the credit methods."""
    revenue: float = 0.0
    wages: float = 0.0
    qre: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.revenue > 0 or self.wages > 0


@dataclass(frozen=True)
class CreditMethodResult:
    asc_credit: float = 0.0
    traditional_credit: float = 0.0
    asc_rate: float = 0.0
    traditional_base: float = 0.0
    credit_base: float = 0.0
    average_prior_qre: float = 0.0
    traditional_available: bool = False
    best_method: str = METHOD_ASC

    @property
    def chosen_credit(self) -> float:
        return max(self.asc_credit, self.traditional_credit)


@dataclass(frozen=True)
class YearFinancials:
    """Everything computed for a single tax year."""
    year: int
    period: str
    offset: int
    revenue: float = 0.0
    wages: float = 0.0
    qualified_wages: float = 0.0
    contract_research_qre: float = 0.0
    supply_qre: float = 0.0
    service_fee_qre: float = 0.0
    total_qre: float = 0.0
    asc_credit: float = 0.0
    traditional_credit: float = 0.0
    asc_rate: float = 0.0
    traditional_base: float = 0.0
    credit_base: float = 0.0
    average_prior_qre: float = 0.0
    traditional_available: bool = False
    best_method: str = METHOD_ASC
    chosen_credit: float = 0.0
    federal_credit: float = 0.0
    state_credit: float = 0.0
    total_credit: float = 0.0
    federal_fee: float = 0.0
    state_fee: float = 0.0
    total_fee: float = 0.0
    net_benefit: float = 0.0
    roi: float = 0.0

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "period": self.period,
            "offset": self.offset,
            "revenue": self.revenue,
            "wages": self.wages,
            "qualifiedWages": self.qualified_wages,
            "contractResearchQRE": self.contract_research_qre,
            "supplyQRE": self.supply_qre,
            "serviceFeeQRE": self.service_fee_qre,
            "totalQRE": self.total_qre,
            "ascCredit": self.asc_credit,
            "traditionalCredit": self.traditional_credit,
            "ascRate": self.asc_rate,
            "traditionalBase": self.traditional_base,
            "creditBase": self.credit_base,
            "averagePriorQRE": self.average_prior_qre,
            "traditionalAvailable": self.traditional_available,
            "bestMethod": self.best_method,
            "chosenCredit": self.chosen_credit,
            "federalCredit": self.federal_credit,
            "stateCredit": self.state_credit,
            "totalCredit": self.total_credit,
            "federalFee": self.federal_fee,
            "stateFee": self.state_fee,
            "totalFee": self.total_fee,
            "netBenefit": self.net_benefit,
            "roi": self.roi,
        }


@dataclass(frozen=True)
class CalculationResult:
    """
    Aggregate credit determination for one assessment snapshot.
    Value object: produced fresh per calculation, never mutated.
    """
    current_year: YearFinancials
    future_years: Tuple[YearFinancials, ...]
    lookback_years: Tuple[YearFinancials, ...]
    can_lookback: bool
    is_qualified: bool
    has_disqualifier: bool
    qualification_score: int
    total_credit: float
    roi: float
    future_total: float
    lookback_total: float
    total_value_n_years: float
    total_federal_credit: float
    total_state_credit: float
    total_fees: float
    total_net_benefit: float
    qsb_eligible: bool
    qsb_payroll_offset: float
    effective_growth_rate: float
    recommendations: Tuple[str, ...]
    warnings: Tuple[str, ...]
    state_table_version: str
    snapshot_hash: str

    @property
    def all_years(self) -> List[YearFinancials]:
        return [self.current_year, *self.future_years, *self.lookback_years]

    def to_dict(self) -> dict:
        current = self.current_year
        future = {f"year{y.offset}": y.total_credit for y in self.future_years}
        lookback = {f"year{k}": 0.0 for k in range(1, LOOKBACK_YEARS + 1)}
        for y in self.lookback_years:
            lookback[f"year{-y.offset}"] = y.total_credit

        return {
            "isQualified": self.is_qualified,
            "hasDisqualifier": self.has_disqualifier,
            "qualificationScore": self.qualification_score,
            "currentYear": current.to_dict(),
            "threeYearFuture": {
                **future,
                "totalCredits": self.future_total,
                "years": [y.to_dict() for y in self.future_years],
            },
            "lookback": {
                **lookback,
                "total": self.lookback_total,
                "years": [y.to_dict() for y in self.lookback_years],
            },
            "canLookback": self.can_lookback,
            "totalCredit": self.total_credit,
            "roi": self.roi,
            "totalValueNYears": self.total_value_n_years,
            "totalFederalCredit": self.total_federal_credit,
            "totalStateCredit": self.total_state_credit,
            "totalFees": self.total_fees,
            "totalNetBenefit": self.total_net_benefit,
            "qsbEligible": self.qsb_eligible,
            "qsbPayrollOffset": self.qsb_payroll_offset,
            "effectiveGrowthRate": self.effective_growth_rate,
            "recommendations": list(self.recommendations),
            "warnings": list(self.warnings),
            "stateTableVersion": self.state_table_version,
            "snapshotHash": self.snapshot_hash,
            # Current-year shortcuts read by the results screen
            "qualifiedWages": current.qualified_wages,
            "serviceFeeQRE": current.service_fee_qre,
            "totalQRE": current.total_qre,
            "ascCredit": current.asc_credit,
            "traditionalCredit": current.traditional_credit,
            "ascRate": current.asc_rate,
            "traditionalBase": current.traditional_base,
            "bestMethod": current.best_method,
            "federalCredit": current.federal_credit,
            "stateCredit": current.state_credit,
        }


# ============================================================================
# Eligibility Gate
# ============================================================================

def normalize_disqualifying_factors(factors: Optional[Sequence[str]]) -> List[str]:
    """
    De-duplicate factor selections and enforce sentinel exclusivity.
    When the sentinel and real factors are both present the last entry wins.
    """
    if not factors:
        return []

    ordered = []
    for factor in factors:
        if factor and factor not in ordered:
            ordered.append(factor)

    if DISQUALIFIER_SENTINEL in ordered and len(ordered) > 1:
        if factors[-1] == DISQUALIFIER_SENTINEL:
            return [DISQUALIFIER_SENTINEL]
        return [f for f in ordered if f != DISQUALIFIER_SENTINEL]

    return ordered


def toggle_disqualifying_factor(factors: Optional[Sequence[str]], factor: str) -> List[str]:
    """Apply one checkbox click to the factor selection and return the new list."""
    current = normalize_disqualifying_factors(factors)

    if factor == DISQUALIFIER_SENTINEL:
        return [DISQUALIFIER_SENTINEL]

    if factor in current:
        return [f for f in current if f != factor]

    return [f for f in current if f != DISQUALIFIER_SENTINEL] + [factor]


def evaluate_eligibility(assessment: AssessmentInput, has_qualified_spend: bool) -> EligibilityResult:
    """
    Check disqualifying factors and the minimal profile requirement.

    Any factor other than the sentinel is disqualifying. The score is advisory
    and only counts qualifying-activity selections.
    """
    factors = normalize_disqualifying_factors(assessment.disqualifying_factors)
    disqualifiers = tuple(f for f in factors if f != DISQUALIFIER_SENTINEL)
    has_disqualifier = len(disqualifiers) > 0

    score = min(MAX_QUALIFICATION_SCORE, assessment.activity_count * SCORE_PER_ACTIVITY)

    return EligibilityResult(
        is_qualified=not has_disqualifier and has_qualified_spend,
        has_disqualifier=has_disqualifier,
        qualification_score=score,
        disqualifiers=disqualifiers,
    )


# ============================================================================
# QRE Aggregator
# ============================================================================

def aggregate_qre(
    total_wages: float,
    rd_wage_percentage: float,
    contract_research_spend: float = 0.0,
    supply_spend: float = 0.0,
    gross_receipts: float = 0.0,
    federal_fee_rate: float = 0.0,
    state_fee_rate: float = 0.0,
    include_service_fee: bool = True,
) -> QREBreakdown:
    """
    Combine wage, contract research, supply and service-fee QRE for a year.

    The service fee and the QRE depend on each other: the advisory/cloud fee
    is priced off the credit, and 77% of that fee is itself QRE. This is
    resolved in one pass, with no convergence loop, in this order:
      1. pre-fee QRE = qualified wages + 65% contract research + 100% supplies
      2. estimated credit = pre-fee QRE x 6.5% preliminary effective rate
      3. fee baseline = estimated credit x (federal + state fee rate),
         capped at gross receipts
      4. service-fee QRE = 77% of the fee baseline
      5. total QRE = pre-fee QRE + service-fee QRE
    The summary prices the final fee off the final credit, so it differs from
    the baseline used in step 3. Known approximation.
    """
    pct = clamp_percentage(rd_wage_percentage)

    qualified_wages = _money(total_wages * pct / 100)
    contract_research_qre = _money(contract_research_spend * CONTRACT_QRE_RATE)
    supply_qre = _money(supply_spend * SUPPLY_QRE_RATE)
    pre_fee_qre = qualified_wages + contract_research_qre + supply_qre

    service_fee_baseline = 0.0
    if include_service_fee:
        estimated_credit = pre_fee_qre * PRELIMINARY_EFFECTIVE_RATE
        fee_rate = max(0.0, federal_fee_rate) + max(0.0, state_fee_rate)
        service_fee_baseline = _money(min(estimated_credit * fee_rate, max(0.0, gross_receipts)))

    service_fee_qre = _money(service_fee_baseline * SERVICE_FEE_QRE_RATE)

    return QREBreakdown(
        qualified_wages=qualified_wages,
        contract_research_qre=contract_research_qre,
        supply_qre=supply_qre,
        service_fee_baseline=service_fee_baseline,
        service_fee_qre=service_fee_qre,
        total_qre=_money(pre_fee_qre + service_fee_qre),
    )


# ============================================================================
# Credit Method Engine
# ============================================================================

def compute_credit_methods(
    total_qre: float,
    prior_years: Sequence[PriorYear],
    qualifying_activity_years: int,
    fixed_base_percentage: float,
) -> CreditMethodResult:
    """
    Compute ASC and Traditional credits for one year and pick the better one.

    Args:
        total_qre: QRE for the year being computed
        prior_years: history, most recent first; only the first 3 are used
        qualifying_activity_years: 0 for the first year of R&D, capped at 3
        fixed_base_percentage: Traditional method fixed-base percentage

    Returns:
        CreditMethodResult. Ties go to ASC; Traditional needs 3 full prior years.
    """
    window = list(prior_years[:HISTORY_YEARS])

    qre_history = [y.qre for y in window if y.qre > 0]
    average_prior_qre = sum(qre_history) / len(qre_history) if qre_history else 0.0

    if qualifying_activity_years <= 0:
        asc_rate = ASC_FIRST_YEAR_RATE
        asc_credit = total_qre * ASC_FIRST_YEAR_RATE
    else:
        asc_rate = ASC_CREDIT_RATE
        asc_credit = max(0.0, total_qre - average_prior_qre * ASC_BASE_PERCENTAGE) * ASC_CREDIT_RATE

    traditional_available = (
        len(window) == HISTORY_YEARS
        and all(y.revenue > 0 and y.wages > 0 for y in window)
    )

    traditional_base = 0.0
    credit_base = 0.0
    traditional_credit = 0.0
    if traditional_available:
        average_gross_receipts = sum(y.revenue for y in window) / HISTORY_YEARS
        traditional_base = max(0.0, fixed_base_percentage) * average_gross_receipts
        # The base used never exceeds half of current QRE
        credit_base = max(0.0, total_qre - min(traditional_base, total_qre * REGULAR_BASE_CAP_PERCENTAGE))
        traditional_credit = credit_base * REGULAR_CREDIT_RATE

    asc_credit = _money(asc_credit)
    traditional_credit = _money(traditional_credit)

    return CreditMethodResult(
        asc_credit=asc_credit,
        traditional_credit=traditional_credit,
        asc_rate=asc_rate,
        traditional_base=_money(traditional_base),
        credit_base=_money(credit_base),
        average_prior_qre=_money(average_prior_qre),
        traditional_available=traditional_available,
        best_method=METHOD_ASC if asc_credit >= traditional_credit else METHOD_TRADITIONAL,
    )


# ============================================================================
# Summary Composer (per year)
# ============================================================================

def compute_state_credit(total_qre: float, average_prior_qre: float, state_row: Optional[StateCreditRow]) -> float:
    if state_row is None or not state_row.has_program:
        return 0.0

    if state_row.method == "incremental":
        basis = max(0.0, total_qre - average_prior_qre * ASC_BASE_PERCENTAGE)
    else:
        basis = total_qre

    return _money(basis * state_row.rate / 100)


@dataclass(frozen=True)
class _YearContext:
    rd_wage_percentage: float
    federal_fee_rate: float
    state_fee_rate: float
    fixed_base_percentage: float
    state_row: Optional[StateCreditRow]


def _compute_year(
    ctx: _YearContext,
    period: str,
    offset: int,
    year: int,
    revenue: float,
    wages: float,
    supply_spend: float,
    contract_research_spend: float,
    prior_years: Sequence[PriorYear],
    qualifying_activity_years: int,
    include_service_fee: bool = True,
) -> YearFinancials:
    """QRE -> credit methods -> federal/state split and fees for one year."""
    qre = aggregate_qre(
        total_wages=wages,
        rd_wage_percentage=ctx.rd_wage_percentage,
        contract_research_spend=contract_research_spend,
        supply_spend=supply_spend,
        gross_receipts=revenue,
        federal_fee_rate=ctx.federal_fee_rate,
        state_fee_rate=ctx.state_fee_rate,
        include_service_fee=include_service_fee,
    )

    methods = compute_credit_methods(
        total_qre=qre.total_qre,
        prior_years=prior_years,
        qualifying_activity_years=qualifying_activity_years,
        fixed_base_percentage=ctx.fixed_base_percentage,
    )

    federal_credit = methods.chosen_credit
    state_credit = compute_state_credit(qre.total_qre, methods.average_prior_qre, ctx.state_row)
    total_credit = round(federal_credit + state_credit, 2)

    federal_fee = _money(federal_credit * ctx.federal_fee_rate)
    state_fee = _money(state_credit * ctx.state_fee_rate)
    total_fee = round(federal_fee + state_fee, 2)

    financials = YearFinancials(
        year=year,
        period=period,
        offset=offset,
        revenue=round(revenue, 2),
        wages=round(wages, 2),
        qualified_wages=qre.qualified_wages,
        contract_research_qre=qre.contract_research_qre,
        supply_qre=qre.supply_qre,
        service_fee_qre=qre.service_fee_qre,
        total_qre=qre.total_qre,
        asc_credit=methods.asc_credit,
        traditional_credit=methods.traditional_credit,
        asc_rate=methods.asc_rate,
        traditional_base=methods.traditional_base,
        credit_base=methods.credit_base,
        average_prior_qre=methods.average_prior_qre,
        traditional_available=methods.traditional_available,
        best_method=methods.best_method,
        chosen_credit=methods.chosen_credit,
        federal_credit=federal_credit,
        state_credit=state_credit,
        total_credit=total_credit,
        federal_fee=federal_fee,
        state_fee=state_fee,
        total_fee=total_fee,
        net_benefit=_money(total_credit - total_fee),
        roi=_ratio(total_credit, total_fee),
    )

    logger.debug(
        f"[{period} {year}] QRE={financials.total_qre:,.2f} ASC={financials.asc_credit:,.2f} "
        f"Traditional={financials.traditional_credit:,.2f} best={financials.best_method}"
    )
    return financials


# ============================================================================
# Multi-Year Projector
# ============================================================================

def growth_rate_floor(settings: EngineSettings) -> float:
    return max(settings.growth_rate_floor, MIN_GROWTH_RATE_FLOOR)


def effective_growth_rate(growth_rate: float, floor: float = MIN_GROWTH_RATE_FLOOR) -> float:
    """Growth rate (percent) actually applied to projections; never below 5%."""
    return max(growth_rate, floor, MIN_GROWTH_RATE_FLOOR)


def historical_years(assessment: AssessmentInput) -> List[PriorYear]:
    """Prior years 1..4 (most recent first) with wage-based QRE."""
    pct = clamp_percentage(assessment.rd_wage_percentage)
    years = []
    for index in range(1, 5):
        prior = assessment.prior_year(index)
        years.append(PriorYear(
            revenue=prior["revenue"],
            wages=prior["wages"],
            qre=_money(prior["wages"] * pct / 100),
        ))
    return years


def claimed_lookback_offsets(
    assessment: AssessmentInput,
    tax_year: int,
    policy: LookbackPolicy,
) -> Set[int]:
    """
    Which lookback years (1 = most recent prior year) were already claimed.

    Explicit ``claimed_tax_years`` win. Otherwise the count of previously
    claimed years is laid over the lookback window according to ``policy``.
    """
    if assessment.claimed_tax_years:
        return {
            tax_year - claimed
            for claimed in assessment.claimed_tax_years
            if 1 <= tax_year - claimed <= LOOKBACK_YEARS
        }

    count = min(assessment.rd_credit_years_previously_claimed, LOOKBACK_YEARS)
    if policy == LookbackPolicy.OLDEST:
        return set(range(LOOKBACK_YEARS, LOOKBACK_YEARS - count, -1))
    return set(range(1, count + 1))


def project_future_years(
    assessment: AssessmentInput,
    ctx: _YearContext,
    current: YearFinancials,
    tax_year: int,
    growth_rate: float,
) -> List[YearFinancials]:
    """
    Three future years, soonest first. Revenue, wages and spend compound at
    ``growth_rate`` (already floored); each year sees the years before it as
    history and one more year of qualifying activity.
    """
    growth = growth_rate / 100
    timeline = [PriorYear(current.revenue, current.wages, current.total_qre)] + historical_years(assessment)

    years = []
    for i in range(1, PROJECTION_YEARS + 1):
        factor = (1 + growth) ** i
        year = _compute_year(
            ctx,
            period=PERIOD_FUTURE,
            offset=i,
            year=tax_year + i,
            revenue=assessment.annual_revenue * factor,
            wages=assessment.total_annual_wages * factor,
            supply_spend=assessment.supply_expenses * factor,
            contract_research_spend=assessment.contract_research * factor,
            prior_years=timeline[:HISTORY_YEARS],
            qualifying_activity_years=min(assessment.qualifying_activity_years + i, MAX_ACTIVITY_YEARS),
        )
        years.append(year)
        timeline.insert(0, PriorYear(year.revenue, year.wages, year.total_qre))

    return years


def compute_lookback_years(
    assessment: AssessmentInput,
    ctx: _YearContext,
    tax_year: int,
    policy: LookbackPolicy,
) -> List[YearFinancials]:
    """
    Up to three prior years, most recent first, from actual figures.
    Years without data or already claimed are skipped, not zero-filled.
    """
    history = historical_years(assessment)
    claimed = claimed_lookback_offsets(assessment, tax_year, policy)

    years = []
    for k in range(1, LOOKBACK_YEARS + 1):
        prior = history[k - 1]
        if not prior.has_data:
            logger.debug(f"Lookback year {tax_year - k} skipped: no revenue or wage data")
            continue
        if k in claimed:
            logger.debug(f"Lookback year {tax_year - k} skipped: already claimed")
            continue

        years.append(_compute_year(
            ctx,
            period=PERIOD_LOOKBACK,
            offset=-k,
            year=tax_year - k,
            revenue=prior.revenue,
            wages=prior.wages,
            supply_spend=0.0,
            contract_research_spend=0.0,
            prior_years=history[k:k + HISTORY_YEARS],
            qualifying_activity_years=max(assessment.qualifying_activity_years - k, 0),
            include_service_fee=False,
        ))

    return years


# ============================================================================
# Snapshot hashing
# ============================================================================

def compute_snapshot_hash(
    assessment: AssessmentInput,
    settings: EngineSettings,
    table_version: str,
    policy: Optional[LookbackPolicy] = None,
) -> str:
    """Content hash of everything a calculation depends on."""
    payload = {
        "assessment": assessment.dict(),
        "settings": settings.to_dict(),
        "state_table_version": table_version,
        "lookback_policy": (policy or settings.lookback_policy).value,
    }
    content = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()


# ============================================================================
# Entry point
# ============================================================================

def _zero_year(period: str, offset: int, year: int) -> YearFinancials:
    return YearFinancials(year=year, period=period, offset=offset)


def calculate_assessment(
    assessment: AssessmentInput,
    settings: Optional[EngineSettings] = None,
    state_table: Optional[StateCreditTable] = None,
    lookback_policy: Optional[LookbackPolicy] = None,
) -> CalculationResult:
    """
    Compute the full credit determination for one snapshot.

    Args:
        assessment: validated assessment snapshot
        settings: engine configuration; defaults when None
        state_table: reference table; the bundled table when None
        lookback_policy: overrides settings.lookback_policy

    Returns:
        CalculationResult (JSON via ``to_dict()``)
    """
    settings = settings or EngineSettings()
    state_table = state_table or load_state_credit_table()
    policy = lookback_policy or settings.lookback_policy

    tax_year = assessment.tax_year or settings.default_tax_year
    growth_rate = effective_growth_rate(assessment.annual_growth_rate, growth_rate_floor(settings))

    ctx = _YearContext(
        rd_wage_percentage=clamp_percentage(assessment.rd_wage_percentage),
        federal_fee_rate=settings.federal_fee_rate if assessment.federal_fee_rate is None else assessment.federal_fee_rate,
        state_fee_rate=settings.state_fee_rate if assessment.state_fee_rate is None else assessment.state_fee_rate,
        fixed_base_percentage=settings.fixed_base_percentage,
        state_row=state_table.get(assessment.business_state),
    )

    current_qre = aggregate_qre(
        total_wages=assessment.total_annual_wages,
        rd_wage_percentage=ctx.rd_wage_percentage,
        contract_research_spend=assessment.contract_research,
        supply_spend=assessment.supply_expenses,
    )
    eligibility = evaluate_eligibility(assessment, has_qualified_spend=current_qre.pre_fee_qre > 0)

    if eligibility.has_disqualifier:
        logger.info(f"Assessment disqualified by: {', '.join(eligibility.disqualifiers)}")
        current = _zero_year(PERIOD_CURRENT, 0, tax_year)
        future = [_zero_year(PERIOD_FUTURE, i, tax_year + i) for i in range(1, PROJECTION_YEARS + 1)]
        lookback = []
    else:
        history = historical_years(assessment)
        current = _compute_year(
            ctx,
            period=PERIOD_CURRENT,
            offset=0,
            year=tax_year,
            revenue=assessment.annual_revenue,
            wages=assessment.total_annual_wages,
            supply_spend=assessment.supply_expenses,
            contract_research_spend=assessment.contract_research,
            prior_years=history[:HISTORY_YEARS],
            qualifying_activity_years=assessment.qualifying_activity_years,
        )
        future = project_future_years(assessment, ctx, current, tax_year, growth_rate)
        lookback = compute_lookback_years(assessment, ctx, tax_year, policy)

    result = compose_result(
        assessment=assessment,
        eligibility=eligibility,
        current=current,
        future=future,
        lookback=lookback,
        settings=settings,
        growth_rate=growth_rate,
        state_row=ctx.state_row,
        state_table_version=state_table.version,
        snapshot_hash=compute_snapshot_hash(assessment, settings, state_table.version, policy),
    )

    logger.info(
        f"Calculated assessment {result.snapshot_hash[:12]}: total_credit={result.total_credit:,.2f} "
        f"best_method={current.best_method} future={result.future_total:,.2f} lookback={result.lookback_total:,.2f}"
    )
    return result


def compose_result(
    assessment: AssessmentInput,
    eligibility: EligibilityResult,
    current: YearFinancials,
    future: Sequence[YearFinancials],
    lookback: Sequence[YearFinancials],
    settings: EngineSettings,
    growth_rate: float,
    state_row: Optional[StateCreditRow],
    state_table_version: str,
    snapshot_hash: str,
) -> CalculationResult:
    """Totals, ROI, QSB flag, recommendations and warnings."""
    all_years = [current, *future, *lookback]

    future_total = round(sum(y.total_credit for y in future), 2)
    lookback_total = round(sum(y.total_credit for y in lookback), 2)
    total_fees = round(sum(y.total_fee for y in all_years), 2)
    total_credit = round(sum(y.total_credit for y in all_years), 2)
    total_value = round(current.total_credit + future_total + lookback_total, 2)

    qsb_eligible = (
        not eligibility.has_disqualifier
        and 0 < assessment.annual_revenue < QSB_GROSS_RECEIPTS_LIMIT
        and 0 < assessment.business_age < QSB_MAX_BUSINESS_AGE
    )
    qsb_payroll_offset = _money(min(current.federal_credit, QSB_PAYROLL_OFFSET_CAP)) if qsb_eligible else 0.0

    recommendations, warnings = _build_messages(
        assessment, eligibility, current, lookback, settings, state_row, qsb_eligible
    )

    return CalculationResult(
        current_year=current,
        future_years=tuple(future),
        lookback_years=tuple(lookback),
        can_lookback=len(lookback) > 0,
        is_qualified=eligibility.is_qualified,
        has_disqualifier=eligibility.has_disqualifier,
        qualification_score=eligibility.qualification_score,
        total_credit=total_credit,
        roi=_ratio(total_credit, total_fees),
        future_total=future_total,
        lookback_total=lookback_total,
        total_value_n_years=total_value,
        total_federal_credit=round(sum(y.federal_credit for y in all_years), 2),
        total_state_credit=round(sum(y.state_credit for y in all_years), 2),
        total_fees=total_fees,
        total_net_benefit=round(sum(y.net_benefit for y in all_years), 2),
        qsb_eligible=qsb_eligible,
        qsb_payroll_offset=qsb_payroll_offset,
        effective_growth_rate=growth_rate,
        recommendations=tuple(recommendations),
        warnings=tuple(warnings),
        state_table_version=state_table_version,
        snapshot_hash=snapshot_hash,
    )


def _build_messages(
    assessment: AssessmentInput,
    eligibility: EligibilityResult,
    current: YearFinancials,
    lookback: Sequence[YearFinancials],
    settings: EngineSettings,
    state_row: Optional[StateCreditRow],
    qsb_eligible: bool,
) -> Tuple[List[str], List[str]]:
    recommendations = []
    warnings = []

    if eligibility.has_disqualifier:
        warnings.append("Your business may have disqualifying factors that need to be addressed.")
        recommendations.append("Resolve the disqualifying factors before pursuing R&D tax credits.")
        return recommendations, warnings

    if eligibility.is_qualified:
        recommendations.append("Your business appears to qualify for R&D tax credits.")
    else:
        recommendations.append("Consider documenting more qualifying activities to improve eligibility.")

    if assessment.rd_wage_percentage < LOW_RD_ALLOCATION_PERCENT:
        recommendations.append("Increasing R&D wage allocation could significantly increase your credit.")

    if not lookback and assessment.rd_credit_years_previously_claimed < LOOKBACK_YEARS:
        recommendations.append("Consider claiming prior year credits if you had qualifying activities.")

    if qsb_eligible:
        recommendations.append(
            f"As a Qualified Small Business you may apply up to ${QSB_PAYROLL_OFFSET_CAP:,.0f} "
            f"of the federal credit against payroll taxes."
        )

    floor = growth_rate_floor(settings)
    if assessment.annual_growth_rate < floor:
        warnings.append(
            f"Growth rate of {assessment.annual_growth_rate:.1f}% is below the "
            f"{floor:.1f}% minimum; projections use {floor:.1f}%."
        )

    if not current.traditional_available:
        warnings.append(
            "Fewer than three prior years of revenue and wage history; "
            "the Traditional method is unavailable and ASC is used."
        )

    if assessment.business_state and (state_row is None or not state_row.has_program):
        warnings.append(f"No state R&D credit is available for {assessment.business_state}.")

    return recommendations, warnings
