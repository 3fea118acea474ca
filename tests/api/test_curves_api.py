"""Tests for the curves API."""

import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, Mock

from main import app
from grade_engine.core.connectivity import ConnectivityMonitor
from grade_engine.schemas.curves import CurveType, GradeCurve
from grade_engine.schemas.grades import GradePeriod
from grade_engine.services.aggregation import GradeAggregator
from grade_engine.services.curve_engine import CurveEngine
from grade_engine.services.validation import ScoreValidator


def cohort_payload():
    return [
        {
            "student_id": f"S{index}",
            "student_name": f"Student {index}",
            "subject_id": "SUB1",
            "grade_period": "MIDTERM",
            "score": percentage,
            "percentage": percentage,
        }
        for index, percentage in enumerate([70, 75, 80], start=1)
    ]


@pytest.fixture
def mock_repository():
    repository = Mock()
    repository.create_curve = AsyncMock(side_effect=lambda curve: curve)
    repository.save_applications = AsyncMock(return_value=3)
    repository.list_curves = AsyncMock(return_value=[])
    return repository


@pytest.fixture
def mock_store():
    store = Mock()
    result = Mock()
    result.to_response.return_value = {"success": True, "state": "committed"}
    store.write = AsyncMock(return_value=result)
    return store


@pytest.fixture
def client(mock_repository, mock_store):
    app.state.validator = ScoreValidator()
    app.state.aggregator = GradeAggregator()
    app.state.curve_engine = CurveEngine()
    app.state.curve_repository = mock_repository
    app.state.connectivity = ConnectivityMonitor()
    app.state.grade_store = mock_store
    return TestClient(app)


class TestCurvesApi:

    def test_statistics(self, client):
        response = client.post("/api/v1/curves/statistics", json={"scores": [70, 75, 80]})

        assert response.status_code == 200
        data = response.json()
        assert data["average"] == pytest.approx(75)
        assert data["total_students"] == 3

    def test_statistics_requires_scores(self, client):
        response = client.post("/api/v1/curves/statistics", json={"scores": []})

        assert response.status_code == 422

    def test_preview(self, client, mock_store, mock_repository):
        response = client.post("/api/v1/curves/preview", json={
            "grades": cohort_payload(),
            "curve": {"subject_id": "SUB1", "curve_type": "TARGET_AVERAGE", "target_average": 80}
        })

        assert response.status_code == 200
        data = response.json()
        assert [a["curved_score"] for a in data["applications"]] == pytest.approx([75, 80, 85])
        assert data["statistics_after"]["average"] == pytest.approx(80)
        mock_store.write.assert_not_awaited()
        mock_repository.create_curve.assert_not_awaited()

    def test_preview_degenerate_curve(self, client):
        response = client.post("/api/v1/curves/preview", json={
            "grades": cohort_payload(),
            "curve": {"subject_id": "SUB1", "curve_type": "LINEAR", "max_grade": 50, "min_grade": 60}
        })

        assert response.status_code == 400

    def test_apply(self, client, mock_store, mock_repository):
        response = client.post("/api/v1/curves/apply", json={
            "grades": cohort_payload(),
            "curve": {"subject_id": "SUB1", "grade_period": "MIDTERM", "curve_type": "LINEAR", "adjustment_factor": 5}
        })

        assert response.status_code == 200
        data = response.json()
        assert data["curve"]["id"]
        assert len(data["write_results"]) == 3
        assert mock_store.write.await_count == 3
        mock_repository.save_applications.assert_awaited_once()

    def test_apply_degenerate_curve_is_rejected(self, client, mock_store):
        response = client.post("/api/v1/curves/apply", json={
            "grades": cohort_payload(),
            "curve": {"subject_id": "SUB1", "curve_type": "LINEAR", "adjustment_factor": 60}
        })

        assert response.status_code == 400
        mock_store.write.assert_not_awaited()

    def test_apply_rejects_bounds_above_100(self, client, mock_store, mock_repository):
        response = client.post("/api/v1/curves/apply", json={
            "grades": cohort_payload(),
            "curve": {"subject_id": "SUB1", "curve_type": "LINEAR", "adjustment_factor": 15, "max_grade": 120}
        })

        assert response.status_code == 422
        mock_repository.create_curve.assert_not_awaited()
        mock_store.write.assert_not_awaited()

    def test_apply_rejects_cohort_without_period(self, client, mock_store, mock_repository):
        grades = cohort_payload()
        grades[0]["grade_period"] = None

        response = client.post("/api/v1/curves/apply", json={
            "grades": grades,
            "curve": {"subject_id": "SUB1", "curve_type": "LINEAR", "adjustment_factor": 5}
        })

        assert response.status_code == 400
        assert "Every grade needs a grade period" in response.json()["detail"]
        mock_repository.create_curve.assert_not_awaited()
        mock_store.write.assert_not_awaited()

    def test_list_subject_curves(self, client, mock_repository):
        mock_repository.list_curves.return_value = [
            GradeCurve(
                id="c1",
                subject_id="SUB1",
                grade_period=GradePeriod.FINAL,
                curve_type=CurveType.LINEAR,
                applied_date=datetime(2024, 10, 1, tzinfo=timezone.utc)
            )
        ]

        response = client.get("/api/v1/curves/subjects/SUB1")

        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == ["c1"]
