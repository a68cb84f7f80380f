"""
SmearScan API - Malaria Diagnostic Pipeline

A clinical decision support API pairing a local CNN blood-smear classifier
with remote multimodal verification, plus a lab-value risk predictor.

This API provides:
- Smear analysis with expert-model verification and DL-only fallback
- Lab-value malaria risk prediction
- Lab report value extraction from images
- Classifier lifecycle inspection and reload
"""

import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from smearscan.config.config import Settings, get_settings
from smearscan.config.logging_config import configure_logging, get_logger, log_request_context
from smearscan.models.diagnosis_models import AnalysisResult, LabInput, LabRiskResult, ModelState
from smearscan.models.models import (
    AnalyzeRequest,
    ErrorResponse,
    HealthResponse,
    HealthStatus,
    LabExtractRequest,
    ModelStatusResponse,
)
from smearscan.services.analysis_service import AnalysisService, get_analysis_service
from smearscan.services.classifier import MalariaClassifier, get_classifier
from smearscan.services.errors import DecodeError
from smearscan.services.lab_risk_service import LabRiskPredictor, get_lab_risk_predictor

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events with proper logging, and warms the
    classifier so the first scan does not pay the model load.
    """
    settings: Settings = app.state.settings

    # Startup
    logger.info(
        "Application starting",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
        config=settings.get_safe_config_dict(),
    )

    if settings.preload_model:
        classifier_provider = app.dependency_overrides.get(get_classifier, get_classifier)
        state = await classifier_provider().load_model()
        logger.info("Classifier preloaded", model_state=state.value)

    yield

    # Shutdown
    logger.info("Application shutting down")


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Optional settings override for testing.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description=__doc__,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.settings = settings

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and context."""
        request_id = str(uuid4())
        start_time = time.perf_counter()

        # Bind request context for all logs in this request
        log_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        processing_time = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-Ms"] = str(processing_time)

        logger.info(
            "Request completed",
            status_code=response.status_code,
            processing_time_ms=processing_time,
        )

        return response

    # Exception handlers
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with structured response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=f"HTTP_{exc.status_code}",
                message=exc.detail,
                request_id=request.headers.get("X-Request-ID"),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(DecodeError)
    async def decode_error_handler(request: Request, exc: DecodeError):
        """Undecodable images are a client error; no result can be produced."""
        logger.warning("Rejected undecodable image", error=str(exc))
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error="IMAGE_DECODE_ERROR",
                message=str(exc),
                request_id=request.headers.get("X-Request-ID"),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception("Unhandled exception", error=str(exc))
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                message="An unexpected error occurred",
                request_id=request.headers.get("X-Request-ID"),
            ).model_dump(mode="json"),
        )

    # Register routes
    register_routes(app)

    return app


def _model_status(classifier: MalariaClassifier) -> ModelStatusResponse:
    return ModelStatusResponse(
        state=classifier.get_state(),
        model_path=classifier.settings.model_path,
        load_attempts=classifier.load_attempts,
        last_error=classifier.last_load_error,
    )


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        settings = app.state.settings
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "status": "operational",
            "docs": "/docs" if settings.debug else "disabled",
        }

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(
        classifier: MalariaClassifier = Depends(get_classifier),
    ) -> HealthResponse:
        """
        Health check endpoint for monitoring.

        The service stays usable without the model or the remote verifier,
        so either missing only degrades the status.
        """
        settings = app.state.settings
        model_state = classifier.get_state()
        checks = {
            "api": True,
            "llm_configured": settings.llm_configured,
            "model_ready": model_state is ModelState.READY,
        }

        # Determine overall status
        if all(checks.values()):
            status = HealthStatus.HEALTHY
        elif checks["api"]:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY

        return HealthResponse(
            status=status,
            version=settings.app_version,
            environment=settings.environment,
            model_state=model_state,
            checks=checks,
        )

    @app.post("/api/v1/scan/analyze", response_model=AnalysisResult, tags=["Scan"])
    async def analyze_smear(
        request: AnalyzeRequest,
        service: AnalysisService = Depends(get_analysis_service),
    ) -> AnalysisResult:
        """
        Analyze a blood smear image for malaria parasites.

        The local CNN produces a preliminary call which the remote multimodal
        model verifies. When verification is unavailable the response has
        `verified=false` and every narrative field carries the
        `DL-ONLY / UNVERIFIED` marker, which must be shown to the user.
        """
        logger.info(
            "Smear analysis request received",
            image_chars=len(request.image),
            has_context=bool(request.patient_context),
        )
        return await service.analyze(request.image, request.patient_context)

    @app.post("/api/v1/lab/risk", response_model=LabRiskResult, tags=["Lab"])
    async def predict_lab_risk(
        request: LabInput,
        predictor: LabRiskPredictor = Depends(get_lab_risk_predictor),
    ) -> LabRiskResult:
        """
        Estimate malaria likelihood from CBC / biochemistry values.

        All fields are optional. When the remote service is unavailable the
        response has `riskLevel="Unknown"` and probability 0.
        """
        logger.info("Lab risk request received", provided_fields=sorted(request.known_values()))
        return await predictor.predict_risk(request)

    @app.post(
        "/api/v1/lab/extract",
        response_model=LabInput,
        response_model_exclude_none=True,
        tags=["Lab"],
    )
    async def extract_lab_values(
        request: LabExtractRequest,
        predictor: LabRiskPredictor = Depends(get_lab_risk_predictor),
    ) -> LabInput:
        """
        Extract lab values from a photographed or scanned lab report.

        Fields that could not be read are omitted, never zeroed.
        """
        logger.info("Lab extraction request received", image_chars=len(request.image))
        return await predictor.extract_from_image(request.image)

    @app.get("/api/v1/model", response_model=ModelStatusResponse, tags=["Model"])
    async def get_model_status(
        classifier: MalariaClassifier = Depends(get_classifier),
    ) -> ModelStatusResponse:
        """Report the local classifier lifecycle state."""
        return _model_status(classifier)

    @app.post("/api/v1/model/reload", response_model=ModelStatusResponse, tags=["Model"])
    async def reload_model(
        classifier: MalariaClassifier = Depends(get_classifier),
    ) -> ModelStatusResponse:
        """
        Retry loading the classifier artifact.

        An UNAVAILABLE classifier stays in simulation mode until this is called.
        """
        state = await classifier.reload_model()
        logger.info("Classifier reload requested", model_state=state.value)
        return _model_status(classifier)


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "smearscan.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
