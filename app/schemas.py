from typing import List, Dict, Any, Optional, Generic, TypeVar
from pydantic import BaseModel, Field, validator
from datetime import datetime
import math

T = TypeVar('T')

DISQUALIFIER_SENTINEL = "None of these apply - We are a for-profit US business"

# =============================================================================
# API ENVELOPE
# =============================================================================

class ApiMeta(BaseModel):
    version: int = 1
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    pagination: Optional[Dict[str, Any]] = None

class ApiError(BaseModel):
    code: str
    message: str
    target: Optional[str] = None # Field name or entity ID
    details: Optional[Any] = None

class ApiResponse(BaseModel, Generic[T]):
    data: Optional[T] = None
    meta: ApiMeta = Field(default_factory=ApiMeta)
    errors: Optional[List[ApiError]] = None

# =============================================================================
# ASSESSMENT SNAPSHOT
# =============================================================================

MONEY_FIELDS = (
    "annual_revenue",
    "prior_year_1_revenue", "prior_year_1_wages",
    "prior_year_2_revenue", "prior_year_2_wages",
    "prior_year_3_revenue", "prior_year_3_wages",
    "prior_year_4_revenue", "prior_year_4_wages",
    "total_annual_wages",
    "supply_expenses",
    "contract_research",
)

COUNT_FIELDS = (
    "business_age",
    "number_of_locations",
    "total_w2_employees",
    "rd_credit_years_previously_claimed",
)

LIST_FIELDS = (
    "disqualifying_factors",
    "tech_activities",
    "clinical_activities",
    "compliance_activities",
    "planned_initiatives",
    "claimed_tax_years",
)

TEXT_FIELDS = (
    "contact_name", "contact_title", "contact_email", "contact_phone",
    "business_name", "healthcare_type", "business_state", "tax_entity_type",
    "has_related_entities", "accounting_method", "prior_staff_change",
)


def _require_finite(value: float) -> float:
    if not math.isfinite(value):
        raise ValueError("must be a finite number")
    return value


class AssessmentInput(BaseModel):
    """
    One client's assessment answers.

    Snapshots are immutable: an edit produces a new snapshot via
    ``snapshot.copy(update={...})``. Every field is optional so a partially
    completed wizard can still be calculated.
    """

    # Eligibility
    disqualifying_factors: List[str] = []

    # Contact / business profile
    contact_name: str = ""
    contact_title: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    business_name: str = ""
    healthcare_type: str = ""
    business_state: str = ""
    business_age: int = 0
    number_of_locations: int = 0
    tax_entity_type: str = ""
    has_related_entities: str = "no"

    # Qualifying activities
    tech_activities: List[str] = []
    clinical_activities: List[str] = []
    compliance_activities: List[str] = []

    # Revenue history (1 = most recent prior year)
    tax_year: Optional[int] = None
    accounting_method: str = ""
    annual_revenue: float = 0.0
    prior_year_1_revenue: float = 0.0
    prior_year_1_wages: float = 0.0
    prior_year_2_revenue: float = 0.0
    prior_year_2_wages: float = 0.0
    prior_year_3_revenue: float = 0.0
    prior_year_3_wages: float = 0.0
    prior_year_4_revenue: float = 0.0
    prior_year_4_wages: float = 0.0

    # Payroll and expenses
    rd_wage_percentage: float = 0.0
    total_annual_wages: float = 0.0
    total_w2_employees: int = 0
    supply_expenses: float = 0.0
    contract_research: float = 0.0
    prior_staff_change: str = ""

    # Credit history
    rd_credit_years_previously_claimed: int = 0
    claimed_tax_years: List[int] = []
    qualifying_activity_years: int = 0

    # Fees (fraction of the respective credit); None uses the org setting
    federal_fee_rate: Optional[float] = None
    state_fee_rate: Optional[float] = None

    # Growth
    annual_growth_rate: float = 0.0
    planned_initiatives: List[str] = []

    class Config:
        frozen = True

    @validator(*MONEY_FIELDS, pre=True)
    def blank_money_is_zero(cls, v):
        if v is None or v == "":
            return 0.0
        return v

    @validator(*MONEY_FIELDS)
    def money_not_negative(cls, v):
        return max(0.0, _require_finite(float(v)))

    @validator(*COUNT_FIELDS, pre=True)
    def blank_count_is_zero(cls, v):
        if v is None or v == "":
            return 0
        return v

    @validator(*COUNT_FIELDS)
    def count_not_negative(cls, v):
        return max(0, v)

    @validator(*LIST_FIELDS, pre=True)
    def blank_list_is_empty(cls, v):
        if v is None:
            return []
        return v

    @validator(*TEXT_FIELDS, pre=True)
    def blank_text(cls, v):
        if v is None:
            return ""
        return v

    @validator("business_state")
    def upper_state(cls, v):
        return v.strip().upper()

    @validator("tax_year", pre=True)
    def parse_tax_year(cls, v):
        if v is None or v == "":
            return None
        return int(v)

    @validator("rd_wage_percentage", pre=True)
    def blank_percentage(cls, v):
        if v is None or v == "":
            return 0.0
        return v

    @validator("rd_wage_percentage")
    def clamp_percentage(cls, v):
        return min(100.0, max(0.0, _require_finite(float(v))))

    @validator("qualifying_activity_years", pre=True)
    def parse_activity_years(cls, v):
        # Wizard sends "0".."3" or "3+"
        if v is None or v == "":
            return 0
        if isinstance(v, str):
            v = v.strip().rstrip("+")
        return v

    @validator("qualifying_activity_years")
    def clamp_activity_years(cls, v):
        return min(3, max(0, v))

    @validator("federal_fee_rate", "state_fee_rate", pre=True)
    def blank_fee_rate(cls, v):
        if v == "":
            return None
        return v

    @validator("federal_fee_rate", "state_fee_rate")
    def clamp_fee_rate(cls, v):
        if v is None:
            return None
        return min(1.0, max(0.0, _require_finite(float(v))))

    @validator("annual_growth_rate", pre=True)
    def blank_growth(cls, v):
        if v is None or v == "":
            return 0.0
        return v

    @validator("annual_growth_rate")
    def finite_growth(cls, v):
        return _require_finite(float(v))

    def prior_year(self, index: int) -> Dict[str, float]:
        """Revenue and wages for prior year ``index`` (1 = most recent, up to 4)."""
        if index < 1 or index > 4:
            return {"revenue": 0.0, "wages": 0.0}
        return {
            "revenue": getattr(self, f"prior_year_{index}_revenue"),
            "wages": getattr(self, f"prior_year_{index}_wages"),
        }

    @property
    def activity_count(self) -> int:
        return len(self.tech_activities) + len(self.clinical_activities) + len(self.compliance_activities)


# =============================================================================
# REQUESTS
# =============================================================================

class ToggleFactorRequest(BaseModel):
    factors: List[str] = []
    factor: str = Field(..., min_length=1)


class SaveAssessmentRequest(BaseModel):
    answers: AssessmentInput
    version: Optional[int] = None  # version the client last loaded; None on first save
