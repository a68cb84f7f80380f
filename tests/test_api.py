"""
API tests for the FastAPI application.

Tests cover:
- Root and health endpoints
- Smear analysis: verified, DL-only fallback, undecodable image, bad requests
- Lab risk prediction and lab report extraction
- Classifier status, reload and startup preload
- Logging configured from the settings the app is created with
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import fenced, to_base64
from smearscan.main import create_app
from smearscan.services.analysis_service import UNVERIFIED_MARKER, AnalysisService, get_analysis_service
from smearscan.services.classifier import get_classifier
from smearscan.services.errors import RemoteInferenceError
from smearscan.services.lab_risk_service import LabRiskPredictor, get_lab_risk_predictor
from smearscan.services.verifier import SmearVerifier


@pytest.fixture
def app(settings, ready_classifier, fake_client):
    application = create_app(settings)
    application.dependency_overrides[get_classifier] = lambda: ready_classifier
    application.dependency_overrides[get_analysis_service] = lambda: AnalysisService(
        classifier=ready_classifier, verifier=SmearVerifier(client=fake_client)
    )
    application.dependency_overrides[get_lab_risk_predictor] = lambda: LabRiskPredictor(
        client=fake_client
    )
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


class TestRootAndHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "SmearScan"

    def test_request_headers(self, client):
        response = client.get("/")
        assert response.headers["X-Request-ID"]
        assert int(response.headers["X-Processing-Time-Ms"]) >= 0

    def test_degraded_until_model_loaded(self, client):
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["model_state"] == "unloaded"
        assert body["checks"] == {"api": True, "llm_configured": True, "model_ready": False}

    def test_healthy_once_model_ready(self, client):
        client.post("/api/v1/model/reload")
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["model_state"] == "ready"


class TestAnalyze:
    def test_verified_scan(self, client, png_base64):
        response = client.post(
            "/api/v1/scan/analyze",
            json={"image": png_base64, "patient_context": "fever, travel to Ghana"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["verified"] is True
        assert body["species"] == "Plasmodium falciparum"
        assert body["stage"] == "Ring Stage"
        assert body["severity"] == "Moderate"
        assert body["dl_metadata"]["source"] == "model"

    def test_fallback_scan_is_marked(self, client, fake_client, png_bytes):
        fake_client.generate.side_effect = RemoteInferenceError("503")

        response = client.post(
            "/api/v1/scan/analyze",
            json={"image": f"data:image/png;base64,{to_base64(png_bytes)}"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["verified"] is False
        assert body["quality_flags"] == ["dl_only_unverified"]
        assert UNVERIFIED_MARKER in body["explanation"]
        assert UNVERIFIED_MARKER in body["treatment_recommendation"]
        assert UNVERIFIED_MARKER in body["clinical_notes"]

    def test_undecodable_image(self, client, fake_client, corrupt_bytes):
        response = client.post("/api/v1/scan/analyze", json={"image": to_base64(corrupt_bytes)})

        assert response.status_code == 422
        assert response.json()["error"] == "IMAGE_DECODE_ERROR"
        fake_client.generate.assert_not_awaited()

    @pytest.mark.parametrize("payload", [{}, {"image": ""}, {"image": "   "}])
    def test_invalid_request(self, client, payload):
        response = client.post("/api/v1/scan/analyze", json=payload)
        assert response.status_code == 422


class TestLab:
    def test_risk_prediction(self, client, fake_client):
        fake_client.generate.return_value = fenced(
            {
                "probability": 78,
                "riskLevel": "High",
                "explanation": "Thrombocytopenia and anemia with fever.",
                "recommendation": "Urgent Malaria Smear and RDT required.",
            }
        )

        response = client.post(
            "/api/v1/lab/risk",
            json={"platelets": 40, "hemoglobin": 9.1, "wbc": 3100, "has_fever": True},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["riskLevel"] == "High"
        assert body["probability"] == 78
        assert body["available"] is True
        prompt = fake_client.generate.await_args.args[0]
        assert "WBC Count (cells/uL): 3100.0" in prompt
        assert "Total Bilirubin" not in prompt

    def test_risk_default_when_remote_down(self, client, fake_client):
        fake_client.generate.side_effect = RemoteInferenceError("timeout")

        response = client.post("/api/v1/lab/risk", json={"platelets": 40, "hemoglobin": 9.1})

        assert response.status_code == 200
        body = response.json()
        assert body["riskLevel"] == "Unknown"
        assert body["probability"] == 0
        assert body["available"] is False

    def test_risk_accepts_client_field_names(self, client, fake_client):
        response = client.post(
            "/api/v1/lab/risk",
            json={
                "hemoglobin": 8.0,
                "platelets": 40,
                "wbcCount": 3000,
                "bilirubin": 3.5,
                "hasFever": True,
            },
        )

        assert response.status_code == 200
        prompt = fake_client.generate.await_args.args[0]
        assert "Fever: Yes" in prompt
        assert "WBC Count (cells/uL): 3000.0" in prompt

    def test_unknown_lab_field_rejected(self, client, fake_client):
        response = client.post("/api/v1/lab/risk", json={"platelets": 40, "temperature": 39.5})
        assert response.status_code == 422
        fake_client.generate.assert_not_awaited()

    def test_negative_value_rejected(self, client):
        response = client.post("/api/v1/lab/risk", json={"platelets": -5})
        assert response.status_code == 422

    def test_extract_omits_unknown_fields(self, client, fake_client, png_base64):
        fake_client.generate.return_value = fenced(
            {"hemoglobin": 9.8, "platelets": None, "wbc": 4500, "bilirubin": None}
        )

        response = client.post("/api/v1/lab/extract", json={"image": png_base64})

        assert response.status_code == 200
        assert response.json() == {"hemoglobin": 9.8, "wbc": 4500.0}

    def test_extract_undecodable(self, client, corrupt_bytes):
        response = client.post("/api/v1/lab/extract", json={"image": to_base64(corrupt_bytes)})
        assert response.status_code == 422
        assert response.json()["error"] == "IMAGE_DECODE_ERROR"


class TestModelEndpoints:
    def test_status(self, client, settings):
        body = client.get("/api/v1/model").json()
        assert body == {
            "state": "unloaded",
            "model_path": settings.model_path,
            "load_attempts": 0,
            "last_error": None,
        }

    def test_reload(self, client):
        body = client.post("/api/v1/model/reload").json()
        assert body["state"] == "ready"
        assert body["load_attempts"] == 1

    def test_reload_unavailable(self, app, unavailable_classifier):
        app.dependency_overrides[get_classifier] = lambda: unavailable_classifier
        with TestClient(app) as client:
            body = client.post("/api/v1/model/reload").json()
        assert body["state"] == "unavailable"
        assert "not found" in body["last_error"]

    def test_startup_preload(self, settings, ready_classifier):
        app = create_app(settings.model_copy(update={"preload_model": True}))
        app.dependency_overrides[get_classifier] = lambda: ready_classifier

        with TestClient(app) as client:
            assert client.get("/api/v1/model").json()["state"] == "ready"


class TestAppLogging:
    def test_logging_configured_from_app_settings(self, settings):
        app_settings = settings.model_copy(update={"log_level": "WARNING"})

        with patch("smearscan.main.configure_logging") as configure:
            create_app(app_settings)

        configure.assert_called_once_with(app_settings)
