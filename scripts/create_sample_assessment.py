#!/usr/bin/env python3
"""
Create Sample R&D Assessment

Runs the credit engine on a realistic healthcare-technology client and
writes the snapshot, the result JSON and the Excel export to test_data/.
"""

import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.schemas import AssessmentInput, DISQUALIFIER_SENTINEL
from app.credit_engine import calculate_assessment
from app.assessment_excel import generate_assessment_workbook

# Output paths
OUTPUT_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "test_data")
SNAPSHOT_FILE = os.path.join(OUTPUT_DIR, "sample_assessment.json")
RESULT_FILE = os.path.join(OUTPUT_DIR, "sample_assessment_result.json")
WORKBOOK_FILE = os.path.join(OUTPUT_DIR, "sample_assessment.xlsx")

os.makedirs(OUTPUT_DIR, exist_ok=True)

SAMPLE_ANSWERS = {
    "disqualifying_factors": [DISQUALIFIER_SENTINEL],
    "contact_name": "Dana Whitfield",
    "contact_title": "CFO",
    "contact_email": "dana@brightpathhealth.example",
    "business_name": "BrightPath Health Systems",
    "healthcare_type": "Digital health / medical software",
    "business_state": "CA",
    "business_age": 4,
    "number_of_locations": 2,
    "tax_entity_type": "C-Corporation",
    "tech_activities": [
        "Developing or improving software",
        "Building integrations between clinical systems",
        "Prototyping new devices or tools",
    ],
    "clinical_activities": [
        "Developing new treatment protocols",
    ],
    "compliance_activities": [
        "Designing HIPAA-compliant data pipelines",
    ],
    "tax_year": 2024,
    "accounting_method": "accrual",
    "annual_revenue": 3_800_000,
    "prior_year_1_revenue": 3_200_000, "prior_year_1_wages": 1_450_000,
    "prior_year_2_revenue": 2_600_000, "prior_year_2_wages": 1_200_000,
    "prior_year_3_revenue": 1_900_000, "prior_year_3_wages": 950_000,
    "prior_year_4_revenue": 1_100_000, "prior_year_4_wages": 700_000,
    "rd_wage_percentage": 35,
    "total_annual_wages": 1_700_000,
    "total_w2_employees": 22,
    "supply_expenses": 85_000,
    "contract_research": 140_000,
    "rd_credit_years_previously_claimed": 1,
    "qualifying_activity_years": "3+",
    "annual_growth_rate": 12,
    "planned_initiatives": ["Remote patient monitoring platform"],
}


def create_sample_assessment():
    """Calculate the sample client and write all artifacts."""
    assessment = AssessmentInput(**SAMPLE_ANSWERS)
    result = calculate_assessment(assessment)

    with open(SNAPSHOT_FILE, "w") as f:
        json.dump(assessment.dict(), f, indent=2)

    with open(RESULT_FILE, "w") as f:
        json.dump(result.to_dict(), f, indent=2)

    with open(WORKBOOK_FILE, "wb") as f:
        f.write(generate_assessment_workbook(result, assessment))

    current = result.current_year
    print(f"Sample assessment created: {WORKBOOK_FILE}")
    print(f"   - QRE ({current.year}): ${current.total_qre:,.2f}")
    print(f"   - Best method: {current.best_method}")
    print(f"   - Current-year credit: ${result.total_credit:,.2f}")
    print(f"   - 3-year future: ${result.future_total:,.2f}")
    print(f"   - Lookback: ${result.lookback_total:,.2f}")
    print(f"   - Total value: ${result.total_value_n_years:,.2f}")

    return result


if __name__ == "__main__":
    create_sample_assessment()
