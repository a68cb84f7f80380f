"""
Smear analysis service: result fusion and fallback control.

Pipeline (strictly sequential per scan):
1. Preprocess the image (DecodeError aborts the scan, nothing else runs)
2. Local CNN classification (never fails, worst case simulated)
3. Remote verification using the classifier output as a hint
4. Fuse: the verifier is authoritative; the classifier result is the
   fallback, and a fallback result is always labelled DL-only / unverified
"""

import time
from uuid import uuid4

from smearscan.config.logging_config import bind_scan_context, get_logger
from smearscan.models.diagnosis_models import (
    AnalysisResult,
    ClassifierOutput,
    DLMetadata,
    InferenceSource,
    VerifierOutput,
)
from smearscan.services.classifier import MalariaClassifier, get_classifier
from smearscan.services.errors import VerificationError
from smearscan.services.image_preprocessor import preprocess
from smearscan.services.verifier import SmearVerifier, get_verifier

logger = get_logger(__name__)


UNVERIFIED_MARKER = "DL-ONLY / UNVERIFIED"

FLAG_DL_ONLY = "dl_only_unverified"
FLAG_SIMULATED = "simulated_classifier"

FALLBACK_EXPLANATION = (
    "Deep Learning preliminary analysis: {finding}.\n\n"
    "[{marker}] Expert AI verification was unavailable. This analysis is based on "
    "preliminary DL predictions only. Please verify with expert microscopy."
)

FALLBACK_TREATMENT_INFECTED = (
    "[{marker}] Preliminary: {severity} severity infection. Consult a healthcare provider "
    "immediately for WHO-compliant treatment. First-line options include "
    "Artemisinin-based Combination Therapy (ACT). VERIFY with an expert diagnosis before treatment."
)

FALLBACK_TREATMENT_CLEAR = (
    "[{marker}] No immediate treatment indicated based on the preliminary scan. "
    "If symptoms persist, seek medical evaluation."
)

FALLBACK_CLINICAL_NOTES = (
    "[{marker}] This is a PRELIMINARY analysis using Deep Learning only. "
    "Expert AI verification failed ({reason}).\n\n"
    "DO NOT rely solely on this result for clinical decisions. Confirm with:\n"
    "- Expert microscopy by a trained parasitologist\n"
    "- Rapid Diagnostic Test (RDT) if available\n"
    "- Clinical presentation correlation\n\n"
    "Seek immediate medical attention if symptoms worsen."
)

SIMULATION_NOTE = (
    "\n\nNote: the trained classifier was not available for this scan; "
    "the preliminary values were produced in simulation mode."
)


def build_verified_result(
    verified: VerifierOutput,
    preliminary: ClassifierOutput,
    processing_time_ms: int,
) -> AnalysisResult:
    """Diagnostic fields from the verifier, classifier kept as audit metadata only."""
    return AnalysisResult(
        is_infected=verified.is_infected,
        species=verified.species,
        stage=verified.stage,
        parasitemia_percent=verified.parasitemia_percent,
        severity=verified.severity,
        confidence=verified.confidence,
        explanation=verified.explanation,
        treatment_recommendation=verified.treatment_recommendation,
        clinical_notes=verified.clinical_notes,
        verified=True,
        quality_flags=[],
        dl_metadata=DLMetadata.from_classifier(preliminary),
        processing_time_ms=processing_time_ms,
    )


def build_fallback_result(
    preliminary: ClassifierOutput,
    reason: str,
    processing_time_ms: int,
) -> AnalysisResult:
    """
    Degraded result built only from the classifier.

    Every narrative field carries UNVERIFIED_MARKER so no consumer can
    mistake it for an expert-verified diagnosis.
    """
    if preliminary.is_infected:
        finding = (
            f"{preliminary.species.value} detected at {preliminary.stage.value}. "
            f"Parasitemia: {preliminary.parasitemia_percent:.2f}%"
        )
        treatment = FALLBACK_TREATMENT_INFECTED.format(
            marker=UNVERIFIED_MARKER, severity=preliminary.severity.value
        )
    else:
        finding = "No parasites detected in preliminary scan"
        treatment = FALLBACK_TREATMENT_CLEAR.format(marker=UNVERIFIED_MARKER)

    explanation = FALLBACK_EXPLANATION.format(finding=finding, marker=UNVERIFIED_MARKER)
    clinical_notes = FALLBACK_CLINICAL_NOTES.format(marker=UNVERIFIED_MARKER, reason=reason)

    flags = [FLAG_DL_ONLY]
    if preliminary.source is InferenceSource.SIMULATION:
        flags.append(FLAG_SIMULATED)
        clinical_notes += SIMULATION_NOTE

    return AnalysisResult(
        is_infected=preliminary.is_infected,
        species=preliminary.species,
        stage=preliminary.stage,
        parasitemia_percent=preliminary.parasitemia_percent,
        severity=preliminary.severity,
        confidence=preliminary.confidence * 100,
        explanation=explanation,
        treatment_recommendation=treatment,
        clinical_notes=clinical_notes,
        verified=False,
        quality_flags=flags,
        dl_metadata=DLMetadata.from_classifier(preliminary),
        processing_time_ms=processing_time_ms,
    )


class AnalysisService:
    """
    Orchestrates the two-stage smear analysis.

    Only DecodeError escapes analyze(); verifier failure is an expected
    branch that produces a flagged DL-only result.
    """

    def __init__(
        self,
        classifier: MalariaClassifier | None = None,
        verifier: SmearVerifier | None = None,
    ):
        self.classifier = classifier or get_classifier()
        self.verifier = verifier or get_verifier()

    async def analyze(self, raw_image: bytes | str, patient_context: str = "") -> AnalysisResult:
        """
        Run the full pipeline on one smear image.

        Args:
            raw_image: Raw bytes, bare base64 or data URL.
            patient_context: Free-text patient information for the verifier.

        Returns:
            AnalysisResult, verified or explicitly flagged as DL-only.

        Raises:
            DecodeError: The image cannot be decoded. No inference is attempted.
        """
        start_time = time.perf_counter()
        bind_scan_context(str(uuid4()))

        tensor = preprocess(raw_image)

        try:
            preliminary = await self.classifier.predict(tensor)
        finally:
            del tensor

        logger.info(
            "Preliminary classification",
            infected=preliminary.is_infected,
            species=preliminary.species.value,
            parasitemia=round(preliminary.parasitemia_percent, 2),
            severity=preliminary.severity.value,
            source=preliminary.source.value,
        )

        try:
            verified = await self.verifier.verify(raw_image, patient_context, preliminary)
        except VerificationError as e:
            processing_time = int((time.perf_counter() - start_time) * 1000)
            logger.warning(
                "Verification unavailable, returning DL-only result",
                error=str(e),
                processing_time_ms=processing_time,
            )
            return build_fallback_result(preliminary, str(e), processing_time)

        processing_time = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Smear analysis complete",
            verified=True,
            infected=verified.is_infected,
            processing_time_ms=processing_time,
        )
        return build_verified_result(verified, preliminary, processing_time)


# Singleton instance for dependency injection
_analysis_service: AnalysisService | None = None


def get_analysis_service() -> AnalysisService:
    """
    Get the analysis service singleton.

    Returns:
        The shared AnalysisService instance.
    """
    global _analysis_service
    if _analysis_service is None:
        _analysis_service = AnalysisService()
    return _analysis_service
