"""
Pydantic models for the smear analysis and lab-risk pipelines.

Every result model is frozen: once a stage has produced it, nothing
downstream mutates it. Enumerations are closed sets; values outside them
fail validation instead of being carried through.
"""

from datetime import datetime
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ============================================================================
# Closed enumerations
# ============================================================================

class Species(str, Enum):
    """Plasmodium species identifiable on a thin smear."""
    FALCIPARUM = "Plasmodium falciparum"
    VIVAX = "Plasmodium vivax"
    MALARIAE = "Plasmodium malariae"
    OVALE = "Plasmodium ovale"
    NONE = "None"


class Stage(str, Enum):
    """Parasite lifecycle stage."""
    RING = "Ring Stage"
    TROPHOZOITE = "Trophozoite"
    SCHIZONT = "Schizont"
    GAMETOCYTE = "Gametocyte"
    NONE = "None"


class Severity(str, Enum):
    """WHO-derived severity bands driven by parasitemia."""
    MILD = "Mild"  # < 1%
    MODERATE = "Moderate"  # 1-5%
    SEVERE = "Severe"  # > 5%


class RiskLevel(str, Enum):
    """Lab-risk categories. UNKNOWN is reserved for the degraded default."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    UNKNOWN = "Unknown"


class InferenceSource(str, Enum):
    """Which classifier strategy produced a preliminary result."""
    MODEL = "model"
    SIMULATION = "simulation"


class ModelState(str, Enum):
    """Lifecycle of the local classifier artifact."""
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    UNAVAILABLE = "unavailable"


MILD_UPPER_BOUND = 1.0
MODERATE_UPPER_BOUND = 5.0


def severity_for_parasitemia(parasitemia_percent: float) -> Severity:
    """
    Map a parasitemia percentage onto the fixed severity bands.

    <1% is Mild, 1-5% is Moderate, >5% is Severe.
    """
    if parasitemia_percent > MODERATE_UPPER_BOUND:
        return Severity.SEVERE
    if parasitemia_percent >= MILD_UPPER_BOUND:
        return Severity.MODERATE
    return Severity.MILD


# ============================================================================
# Stage outputs
# ============================================================================

class ClassifierOutput(BaseModel):
    """
    Preliminary result from the local CNN (or its simulated stand-in).

    Attributes:
        is_infected: Whether the classifier called the smear parasitized.
        confidence: Confidence in favour of the chosen class (0-1).
        species: Low-confidence species guess.
        species_confidence: Confidence attached to the species guess (0-1).
        stage: Low-confidence lifecycle stage guess.
        stage_confidence: Confidence attached to the stage guess (0-1).
        parasitemia_percent: Coarse parasitemia estimate.
        severity: Severity derived from parasitemia_percent.
        processing_time_ms: Wall time of the predict call.
        raw_score: Sigmoid output of the network, None when simulated.
        source: Strategy that produced this result.
    """
    model_config = ConfigDict(frozen=True)

    is_infected: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    species: Species
    species_confidence: float = Field(..., ge=0.0, le=1.0)
    stage: Stage
    stage_confidence: float = Field(..., ge=0.0, le=1.0)
    parasitemia_percent: float = Field(..., ge=0.0, le=100.0)
    severity: Severity
    processing_time_ms: int = Field(..., ge=0)
    raw_score: float | None = Field(default=None, ge=0.0, le=1.0)
    source: InferenceSource


class VerifierOutput(BaseModel):
    """
    Structured answer from the remote multimodal verifier.

    Field aliases are the exact JSON keys demanded from the remote model;
    every key is required and enum values must belong to the closed sets.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    is_infected: bool = Field(..., alias="isInfected")
    species: Species
    stage: Stage
    parasitemia_percent: float = Field(..., alias="parasitemia", ge=0.0, le=100.0)
    severity: Severity
    confidence: float = Field(..., ge=0.0, le=100.0)
    explanation: str
    treatment_recommendation: str = Field(..., alias="treatmentRecommendation")
    clinical_notes: str = Field(..., alias="clinicalNotes")


class DLMetadata(BaseModel):
    """Audit trail of the local classifier run. Never overrides diagnostic fields."""
    model_config = ConfigDict(frozen=True)

    processing_time_ms: int = Field(..., ge=0)
    confidence: float = Field(..., ge=0.0, le=100.0, description="Classifier confidence (percent)")
    species_confidence: float = Field(..., ge=0.0, le=100.0, description="Percent")
    stage_confidence: float = Field(..., ge=0.0, le=100.0, description="Percent")
    detected_parasites: int = Field(default=0, ge=0)
    source: InferenceSource

    @classmethod
    def from_classifier(cls, output: ClassifierOutput) -> "DLMetadata":
        return cls(
            processing_time_ms=output.processing_time_ms,
            confidence=output.confidence * 100,
            species_confidence=output.species_confidence * 100,
            stage_confidence=output.stage_confidence * 100,
            detected_parasites=0,
            source=output.source,
        )


class AnalysisResult(BaseModel):
    """
    Final, externally visible smear analysis.

    Attributes:
        is_infected: Authoritative infection call.
        species: Authoritative species.
        stage: Authoritative lifecycle stage.
        parasitemia_percent: Authoritative parasitemia.
        severity: Authoritative severity.
        confidence: Confidence in percent (0-100).
        explanation: Findings narrative.
        treatment_recommendation: Treatment guidance.
        clinical_notes: Follow-up guidance and warning signs.
        verified: False when the remote verifier was unavailable.
        quality_flags: Machine-readable degradation markers.
        dl_metadata: Local classifier audit block.
        processing_time_ms: Wall time of the whole pipeline.
    """
    model_config = ConfigDict(frozen=True)

    is_infected: bool
    species: Species
    stage: Stage
    parasitemia_percent: float = Field(..., ge=0.0, le=100.0)
    severity: Severity
    confidence: float = Field(..., ge=0.0, le=100.0)
    explanation: str
    treatment_recommendation: str
    clinical_notes: str
    verified: bool
    quality_flags: list[str] = Field(default_factory=list)
    dl_metadata: DLMetadata
    processing_time_ms: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================================
# Lab risk
# ============================================================================

class LabInput(BaseModel):
    """
    Partial CBC / biochemistry panel.

    Every field is optional. None means unknown; zero is a real measurement.
    Client spellings (wbcCount, hasFever, isFever) are accepted; unknown
    keys are rejected.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    hemoglobin: float | None = Field(default=None, ge=0.0, description="Hemoglobin (g/dL)")
    platelets: float | None = Field(default=None, ge=0.0, description="Platelet count (10^3/uL)")
    wbc_count: float | None = Field(
        default=None,
        ge=0.0,
        validation_alias=AliasChoices("wbc", "wbcCount", "wbc_count"),
        serialization_alias="wbc",
        description="WBC count (cells/uL)",
    )
    bilirubin: float | None = Field(default=None, ge=0.0, description="Total bilirubin (mg/dL)")
    has_fever: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("has_fever", "hasFever", "isFever"),
        description="Current or recent fever",
    )

    def known_values(self) -> dict:
        """Return only the fields that were actually provided."""
        return self.model_dump(exclude_none=True)


class LabRiskResult(BaseModel):
    """Malaria likelihood from lab values."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    probability: float = Field(..., ge=0.0, le=100.0)
    risk_level: RiskLevel = Field(..., alias="riskLevel")
    explanation: str
    recommendation: str
    available: bool = Field(default=True, description="False for the degraded default")
