"""
API tests for the assessment routes.
Run with: python -m pytest tests/test_assessment_routes.py -v
"""

import io
import os
import pytest
from unittest.mock import patch, MagicMock
from fastapi.testclient import TestClient
from openpyxl import load_workbook

# Set test environment
os.environ["ENVIRONMENT"] = "test"

from app.main import app
from app.schemas import DISQUALIFIER_SENTINEL
from app.engine_settings import invalidate_cache
from app.calculation_cache import calculation_cache

client = TestClient(app)

ANSWERS = {
    "disqualifying_factors": [DISQUALIFIER_SENTINEL],
    "business_name": "Acme Diagnostics",
    "business_state": "ca",
    "business_age": 6,
    "tech_activities": ["Software development"],
    "tax_year": "2024",
    "annual_revenue": 2000000,
    "total_annual_wages": 1000000,
    "rd_wage_percentage": 50,
    "qualifying_activity_years": "3+",
    "prior_year_1_revenue": 2000000, "prior_year_1_wages": 1000000,
    "prior_year_2_revenue": 2000000, "prior_year_2_wages": 1000000,
    "prior_year_3_revenue": 2000000, "prior_year_3_wages": 1000000,
    "annual_growth_rate": 7,
}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def clear_caches():
    invalidate_cache()
    calculation_cache.invalidate()
    yield


@pytest.fixture
def mock_supabase():
    """Mock Supabase client for testing."""
    with patch("app.assessment_routes.get_supabase") as mock:
        mock_client = MagicMock()
        mock_client.table.return_value.select.return_value.eq.return_value.single.return_value.execute.return_value = MagicMock(
            data={"defaults": {}}
        )
        mock.return_value = mock_client
        yield mock_client


@pytest.fixture
def mock_auth():
    """Mock authentication for protected endpoints."""
    with patch("app.assessment_routes.verify_supabase_token") as mock_verify:
        mock_verify.return_value = {"id": "test-user-id", "email": "test@example.com"}
        with patch("app.assessment_routes.get_user_profile") as mock_profile:
            mock_profile.return_value = {"organization_id": "test-org-id"}
            yield mock_profile


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-token"}


def stored_rows(mock_client, rows):
    mock_client.table.return_value.select.return_value.eq.return_value.eq.return_value.limit.return_value.execute.return_value = MagicMock(
        data=rows
    )


# =============================================================================
# AUTH
# =============================================================================

class TestAuth:

    def test_missing_header(self):
        response = client.post("/api/assessments/calculate", json=ANSWERS)
        assert response.status_code == 401

    def test_malformed_header(self):
        response = client.post("/api/assessments/calculate", json=ANSWERS, headers={"Authorization": "Token abc"})
        assert response.status_code == 401

    def test_invalid_token(self):
        with patch("app.assessment_routes.verify_supabase_token") as mock_verify:
            mock_verify.return_value = None
            response = client.post(
                "/api/assessments/calculate",
                json=ANSWERS,
                headers={"Authorization": "Bearer invalid-token"}
            )
        assert response.status_code == 401

    def test_no_organization(self, mock_auth, auth_headers):
        mock_auth.return_value = {"organization_id": None}
        response = client.post("/api/assessments/calculate", json=ANSWERS, headers=auth_headers)
        assert response.status_code == 403


# =============================================================================
# CALCULATION
# =============================================================================

class TestCalculateEndpoint:

    def test_calculate(self, mock_supabase, mock_auth, auth_headers):
        response = client.post("/api/assessments/calculate", json=ANSWERS, headers=auth_headers)
        assert response.status_code == 200

        data = response.json()["data"]
        assert data["isQualified"] is True
        assert data["currentYear"]["year"] == 2024
        assert data["currentYear"]["bestMethod"] == "Traditional"
        assert data["threeYearFuture"]["year1"] > 0
        assert data["totalValueNYears"] == pytest.approx(
            data["currentYear"]["totalCredit"] + data["threeYearFuture"]["totalCredits"] + data["lookback"]["total"], abs=0.01
        )
        all_years = [data["currentYear"], *data["threeYearFuture"]["years"], *data["lookback"]["years"]]
        assert data["totalCredit"] == pytest.approx(sum(y["totalCredit"] for y in all_years), abs=0.01)

    def test_calculate_uses_org_settings(self, mock_supabase, mock_auth, auth_headers):
        mock_supabase.table.return_value.select.return_value.eq.return_value.single.return_value.execute.return_value = MagicMock(
            data={"defaults": {"assessment_engine": {"federal_fee_rate": 0, "state_fee_rate": 0}}}
        )
        response = client.post("/api/assessments/calculate", json=ANSWERS, headers=auth_headers)
        data = response.json()["data"]
        assert data["currentYear"]["totalFee"] == 0.0
        assert data["serviceFeeQRE"] == 0.0

    def test_calculate_without_store(self, mock_auth, auth_headers):
        with patch("app.assessment_routes.get_supabase", return_value=None):
            response = client.post("/api/assessments/calculate", json=ANSWERS, headers=auth_headers)
        assert response.status_code == 200

    def test_disqualified(self, mock_supabase, mock_auth, auth_headers):
        answers = dict(ANSWERS, disqualifying_factors=["Research conducted outside the United States"])
        data = client.post("/api/assessments/calculate", json=answers, headers=auth_headers).json()["data"]
        assert data["hasDisqualifier"] is True
        assert data["totalCredit"] == 0.0
        assert data["lookback"]["years"] == []

    def test_invalid_number_rejected(self, mock_supabase, mock_auth, auth_headers):
        answers = dict(ANSWERS, annual_revenue="lots")
        response = client.post("/api/assessments/calculate", json=answers, headers=auth_headers)
        assert response.status_code == 422

    def test_states(self):
        response = client.get("/api/assessments/states")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["version"] == "2024.1"
        assert any(s["code"] == "CA" for s in data["states"])

    def test_toggle_factor(self):
        response = client.post(
            "/api/assessments/disqualifying-factors/toggle",
            json={"factors": ["Research funded by a grant or customer"], "factor": DISQUALIFIER_SENTINEL}
        )
        assert response.status_code == 200
        assert response.json()["data"]["disqualifying_factors"] == [DISQUALIFIER_SENTINEL]

    def test_refresh_settings(self, mock_supabase, mock_auth, auth_headers):
        response = client.post("/api/assessments/settings/refresh", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["lookback_policy"] == "most_recent"


# =============================================================================
# STORED ASSESSMENTS
# =============================================================================

class TestStoredAssessments:

    def test_get_not_found(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [])
        response = client.get("/api/assessments/client-1", headers=auth_headers)
        assert response.status_code == 404

    def test_get_existing(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [{"id": "a-1", "version": 4, "answers": ANSWERS, "result": {"totalCredit": 1.0}}])
        response = client.get("/api/assessments/client-1", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["version"] == 4
        assert data["answers"]["business_name"] == "Acme Diagnostics"

    def test_get_without_store(self, mock_auth, auth_headers):
        with patch("app.assessment_routes.get_supabase", return_value=None):
            response = client.get("/api/assessments/client-1", headers=auth_headers)
        assert response.status_code == 503

    def test_load_failure(self, mock_supabase, mock_auth, auth_headers):
        mock_supabase.table.return_value.select.return_value.eq.return_value.eq.return_value.limit.return_value.execute.side_effect = Exception("db down")
        response = client.get("/api/assessments/client-1", headers=auth_headers)
        assert response.status_code == 500

    def test_first_save_creates(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [])
        mock_supabase.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[{"id": "a-1"}])

        response = client.put("/api/assessments/client-1", json={"answers": ANSWERS}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == "a-1"
        assert data["version"] == 1
        record = mock_supabase.table.return_value.insert.call_args_list[0][0][0]
        assert record["organization_id"] == "test-org-id"
        assert record["client_company_id"] == "client-1"
        assert record["answers"]["business_state"] == "CA"
        assert record["snapshot_hash"] == data["result"]["snapshotHash"]

    def test_save_increments_version(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [{"id": "a-1", "version": 2}])

        response = client.put("/api/assessments/client-1", json={"answers": ANSWERS, "version": 2}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["data"]["version"] == 3
        record = mock_supabase.table.return_value.update.call_args[0][0]
        assert record["version"] == 3

    def test_stale_version_conflict(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [{"id": "a-1", "version": 5}])

        response = client.put("/api/assessments/client-1", json={"answers": ANSWERS, "version": 4}, headers=auth_headers)

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "CONFLICT"
        assert detail["stored_version"] == 5
        mock_supabase.table.return_value.update.assert_not_called()

    def test_save_failure(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [])
        mock_supabase.table.return_value.insert.side_effect = Exception("db down")

        response = client.put("/api/assessments/client-1", json={"answers": ANSWERS}, headers=auth_headers)

        assert response.status_code == 500

    def test_save_normalizes_factors(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [])
        mock_supabase.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[{"id": "a-1"}])
        answers = dict(ANSWERS, disqualifying_factors=["Research funded by a grant or customer", DISQUALIFIER_SENTINEL])

        client.put("/api/assessments/client-1", json={"answers": answers}, headers=auth_headers)

        record = mock_supabase.table.return_value.insert.call_args_list[0][0][0]
        assert record["answers"]["disqualifying_factors"] == [DISQUALIFIER_SENTINEL]

    def test_export(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [{"id": "a-1", "version": 1, "answers": ANSWERS}])

        response = client.get("/api/assessments/client-1/export", headers=auth_headers)

        assert response.status_code == 200
        assert "spreadsheetml" in response.headers["content-type"]
        assert "rd_assessment_client-1_2024.xlsx" in response.headers["content-disposition"]
        wb = load_workbook(io.BytesIO(response.content))
        assert wb.sheetnames == ["Summary", "Year_Detail", "Inputs"]

    def test_export_not_found(self, mock_supabase, mock_auth, auth_headers):
        stored_rows(mock_supabase, [])
        response = client.get("/api/assessments/client-1/export", headers=auth_headers)
        assert response.status_code == 404
