"""
Assessment Excel Export

Writes a CalculationResult (and the snapshot it came from) to a workbook:
Summary, Year_Detail (one row per computed year), Inputs.
"""

import io
import logging
from datetime import datetime
from typing import Optional

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill, Border, Side
from openpyxl.utils.dataframe import dataframe_to_rows
from openpyxl.utils import get_column_letter

from app.credit_engine import CalculationResult
from app.schemas import AssessmentInput

logger = logging.getLogger(__name__)

# Styling constants
HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True)
SECTION_FONT = Font(bold=True)
BEST_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
BORDER = Border(
    left=Side(style='thin'),
    right=Side(style='thin'),
    top=Side(style='thin'),
    bottom=Side(style='thin')
)

CURRENCY_FORMAT = '$#,##0.00'

YEAR_COLUMNS = [
    ("Year", "year"),
    ("Period", "period"),
    ("Revenue", "revenue"),
    ("Wages", "wages"),
    ("Qualified_Wages", "qualified_wages"),
    ("Contract_Research_QRE", "contract_research_qre"),
    ("Supply_QRE", "supply_qre"),
    ("Service_Fee_QRE", "service_fee_qre"),
    ("Total_QRE", "total_qre"),
    ("ASC_Credit", "asc_credit"),
    ("Traditional_Credit", "traditional_credit"),
    ("Best_Method", "best_method"),
    ("Federal_Credit", "federal_credit"),
    ("State_Credit", "state_credit"),
    ("Total_Credit", "total_credit"),
    ("Total_Fee", "total_fee"),
    ("Net_Benefit", "net_benefit"),
    ("ROI", "roi"),
]

TEXT_COLUMNS = {"Year", "Period", "Best_Method", "ROI"}


def apply_header_style(ws, row_num: int = 1):
    """Apply header styling to a row"""
    for cell in ws[row_num]:
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal='center', vertical='center')
        cell.border = BORDER


def auto_adjust_columns(ws):
    """Auto-adjust column widths based on content"""
    for column in ws.columns:
        column_letter = get_column_letter(column[0].column)
        max_length = max((len(str(cell.value)) for cell in column if cell.value is not None), default=0)
        ws.column_dimensions[column_letter].width = min(max_length + 2, 50)


def year_dataframe(result: CalculationResult) -> pd.DataFrame:
    """One row per computed year: current, future (soonest first), lookback (most recent first)."""
    rows = [
        {label: getattr(year, attr) for label, attr in YEAR_COLUMNS}
        for year in result.all_years
    ]
    return pd.DataFrame(rows, columns=[label for label, _ in YEAR_COLUMNS])


# =============================================================================
# WORKSHEET GENERATORS
# =============================================================================

def generate_summary_sheet(wb: Workbook, result: CalculationResult, assessment: AssessmentInput):
    """Generate Summary worksheet"""
    ws = wb.create_sheet("Summary")
    current = result.current_year

    data = [
        ["R&D TAX CREDIT ASSESSMENT - SUMMARY", ""],
        ["", ""],
        ["CLIENT", ""],
        ["Business Name", assessment.business_name or "Not provided"],
        ["Contact", assessment.contact_name or "Not provided"],
        ["State", assessment.business_state or "N/A"],
        ["Tax Year", current.year],
        ["Report Generated", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
        ["", ""],
        ["ELIGIBILITY", ""],
        ["Qualified", "Yes" if result.is_qualified else "No"],
        ["Disqualifying Factors", "Yes" if result.has_disqualifier else "No"],
        ["Qualification Score", result.qualification_score],
        ["", ""],
        ["CURRENT YEAR", ""],
        ["Total QRE", current.total_qre],
        ["ASC Credit", current.asc_credit],
        ["Traditional Credit", current.traditional_credit],
        ["Best Method", current.best_method],
        ["Federal Credit", current.federal_credit],
        ["State Credit", current.state_credit],
        ["Current-Year Credit", current.total_credit],
        ["Current-Year ROI", f"{current.roi:.2f}x"],
        ["", ""],
        ["MULTI-YEAR", ""],
        ["3-Year Future Credits", result.future_total],
        ["Lookback Credits", result.lookback_total],
        ["Total Credit", result.total_credit],
        ["Total Fees", result.total_fees],
        ["Total Net Benefit", result.total_net_benefit],
        ["ROI", f"{result.roi:.2f}x"],
    ]

    for row in data:
        ws.append(row)

    for row in ws.iter_rows(min_row=1, max_col=2):
        label, value = row
        if label.value and str(label.value).isupper():
            label.font = SECTION_FONT
        if isinstance(value.value, float):
            value.number_format = CURRENCY_FORMAT

    notes_row = ws.max_row + 2
    ws.cell(row=notes_row, column=1, value="RECOMMENDATIONS").font = SECTION_FONT
    for offset, message in enumerate(result.recommendations, start=1):
        ws.cell(row=notes_row + offset, column=1, value=message)

    warnings_row = ws.max_row + 2
    ws.cell(row=warnings_row, column=1, value="WARNINGS").font = SECTION_FONT
    for offset, message in enumerate(result.warnings, start=1):
        ws.cell(row=warnings_row + offset, column=1, value=message)

    auto_adjust_columns(ws)


def generate_year_detail_sheet(wb: Workbook, result: CalculationResult):
    """Generate Year_Detail worksheet"""
    ws = wb.create_sheet("Year_Detail")

    df = year_dataframe(result)
    for row in dataframe_to_rows(df, index=False, header=True):
        ws.append(row)
    apply_header_style(ws)

    headers = [cell.value for cell in ws[1]]
    method_col = headers.index("Best_Method") + 1
    for row in ws.iter_rows(min_row=2):
        for cell in row:
            cell.border = BORDER
            if headers[cell.column - 1] not in TEXT_COLUMNS:
                cell.number_format = CURRENCY_FORMAT
        row[method_col - 1].fill = BEST_FILL

    auto_adjust_columns(ws)


def generate_inputs_sheet(wb: Workbook, assessment: AssessmentInput):
    """Generate Inputs worksheet (the snapshot the result was computed from)"""
    ws = wb.create_sheet("Inputs")
    ws.append(["Field", "Value"])
    apply_header_style(ws)

    for key, value in assessment.dict().items():
        if isinstance(value, list):
            value = "; ".join(str(v) for v in value)
        ws.append([key, value if value is not None else ""])

    auto_adjust_columns(ws)


def generate_assessment_workbook(
    result: CalculationResult,
    assessment: Optional[AssessmentInput] = None,
) -> bytes:
    """
    Generate the assessment results workbook.

    Args:
        result: engine output
        assessment: snapshot the result was computed from

    Returns:
        bytes: Excel file content
    """
    assessment = assessment or AssessmentInput()

    wb = Workbook()
    wb.remove(wb.active)

    generate_summary_sheet(wb, result, assessment)
    generate_year_detail_sheet(wb, result)
    generate_inputs_sheet(wb, assessment)

    output = io.BytesIO()
    wb.save(output)
    output.seek(0)

    logger.info(f"Assessment workbook generated for snapshot {result.snapshot_hash[:12]}")
    return output.getvalue()
