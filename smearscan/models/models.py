"""
Pydantic models for API request/response validation.

All models are explicit, documented, and enforce strict validation.
Invalid inputs fail closed with descriptive error messages.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from smearscan.models.diagnosis_models import ModelState

# ~15 MB of image data once base64 encoded
MAX_IMAGE_PAYLOAD_CHARS = 20_000_000


class AnalyzeRequest(BaseModel):
    """
    Request to analyze one blood smear image.

    Attributes:
        image: Base64 image, with or without a data URL prefix.
        patient_context: Free-text patient information for the verifier.
    """
    image: str = Field(
        ...,
        min_length=1,
        max_length=MAX_IMAGE_PAYLOAD_CHARS,
        description="Base64 encoded smear image (data URL prefix allowed)"
    )
    patient_context: str = Field(
        default="",
        max_length=5000,
        description="Patient age, symptoms, travel history, etc."
    )

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Ensure the image payload is not just whitespace."""
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("Image payload cannot be empty")
        return cleaned


class LabExtractRequest(BaseModel):
    """
    Request to extract lab values from a lab report image.

    Attributes:
        image: Base64 image, with or without a data URL prefix.
    """
    image: str = Field(
        ...,
        min_length=1,
        max_length=MAX_IMAGE_PAYLOAD_CHARS,
        description="Base64 encoded lab report image (data URL prefix allowed)"
    )

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Ensure the image payload is not just whitespace."""
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("Image payload cannot be empty")
        return cleaned


class ModelStatusResponse(BaseModel):
    """
    State of the local classifier.

    Attributes:
        state: Current lifecycle state.
        model_path: Configured artifact location.
        load_attempts: Number of load attempts so far.
        last_error: Reason for the last failed load, if any.
    """
    model_config = ConfigDict(protected_namespaces=())

    state: ModelState = Field(..., description="Classifier lifecycle state")
    model_path: str = Field(..., description="Configured artifact path")
    load_attempts: int = Field(..., ge=0, description="Load attempts so far")
    last_error: str | None = Field(default=None, description="Last load failure")


class HealthStatus(str, Enum):
    """System health status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    """
    Health check response for monitoring.

    Attributes:
        status: Overall system health status.
        version: Application version.
        environment: Deployment environment.
        model_state: Local classifier state.
        checks: Individual component health checks.
    """
    model_config = ConfigDict(protected_namespaces=())

    status: HealthStatus = Field(..., description="Overall health status")
    version: str = Field(..., description="Application version")
    environment: str = Field(..., description="Deployment environment")
    model_state: ModelState = Field(..., description="Local classifier state")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Check timestamp")
    checks: dict[str, bool] = Field(default_factory=dict, description="Component health checks")


class ErrorResponse(BaseModel):
    """
    Standardized error response.

    Attributes:
        error: Error type/code.
        message: Human-readable error message.
        details: Additional error details.
        request_id: Request ID for tracing.
    """
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict | None = Field(default=None, description="Additional details")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")
