"""
Remote smear verifier.

Sends the smear image, the patient context and the local classifier's
preliminary call to the remote multimodal model, then validates the
structured answer before it is allowed anywhere near a diagnosis.
"""

import time

from pydantic import ValidationError

from smearscan.config.logging_config import get_logger
from smearscan.models.diagnosis_models import ClassifierOutput, Severity, Species, Stage, VerifierOutput
from smearscan.services.errors import (
    DecodeError,
    RemoteInferenceError,
    ResponseParseError,
    VerificationError,
)
from smearscan.services.image_preprocessor import InlineImage, to_inline_image
from smearscan.services.inference_client import (
    InferenceClient,
    get_inference_client,
    parse_json_response,
)

logger = get_logger(__name__)


def _choices(enum_cls) -> str:
    return ", ".join(f'"{member.value}"' for member in enum_cls)


VERIFICATION_PROMPT = """You are an Expert Medical AI specializing in Malaria Microscopy and Tropical Medicine.

TASK: Analyze this blood smear microscopy image for malaria parasites and provide a comprehensive clinical assessment.

PATIENT CONTEXT:
{patient_context}

PRELIMINARY DL ANALYSIS (For Reference - Verify and Correct if Needed):
- Infection Detected: {is_infected}
- Predicted Species: {species}
- Predicted Stage: {stage}
- Parasitemia: {parasitemia:.2f}%
- Severity: {severity}
- Classifier Confidence: {confidence:.1f}%

INSTRUCTIONS:
1. Carefully examine the blood smear image.
2. VERIFY or CORRECT the preliminary predictions based on the microscopic features you actually observe.
3. Identify the Plasmodium species by morphology:
   - P. falciparum: Multiple rings per RBC, banana-shaped gametocytes, no Schuffner's dots, delicate rings
   - P. vivax: Enlarged RBCs (1.5x normal), amoeboid trophozoites, Schuffner's dots (pink stippling)
   - P. ovale: Oval/fimbriated RBCs, Schuffner's dots, compact trophozoites
   - P. malariae: Band forms, compact forms, rosette schizonts, daisy-head appearance
4. Identify the lifecycle stage:
   - Ring Stage: Small ring forms with a chromatin dot
   - Trophozoite: Amoeboid forms, larger than rings
   - Schizont: Multiple merozoites within the RBC
   - Gametocyte: Sexual forms (banana-shaped for P. falciparum, round for others)
5. Count infected vs total RBCs: parasitemia = (Infected RBCs / Total RBCs) x 100
6. Classify severity using WHO criteria:
   - Mild: <1% parasitemia, no complications
   - Moderate: 1-5% parasitemia
   - Severe: >5% parasitemia OR complications
7. Provide WHO-compliant antimalarial treatment with exact dosages.
8. Include warning signs and follow-up guidance.

If no parasites are seen, use "None" for species and stage and 0 for parasitemia.

RESPONSE FORMAT: Return ONLY a single valid JSON object (no markdown, no prose) with exactly these keys:
{{
  "isInfected": boolean,
  "species": string (one of: {species_choices}),
  "stage": string (one of: {stage_choices}),
  "parasitemia": number (0-100),
  "severity": string (one of: {severity_choices}),
  "confidence": number (0-100),
  "explanation": string (detailed microscopic findings),
  "treatmentRecommendation": string (WHO-compliant treatment with dosages),
  "clinicalNotes": string (follow-up guidance and warning signs)
}}"""


def build_verification_prompt(patient_context: str, preliminary: ClassifierOutput) -> str:
    """Embed the patient context and preliminary call into the verification prompt."""
    return VERIFICATION_PROMPT.format(
        patient_context=patient_context.strip() or "Not provided",
        is_infected=preliminary.is_infected,
        species=preliminary.species.value,
        stage=preliminary.stage.value,
        parasitemia=preliminary.parasitemia_percent,
        severity=preliminary.severity.value,
        confidence=preliminary.confidence * 100,
        species_choices=_choices(Species),
        stage_choices=_choices(Stage),
        severity_choices=_choices(Severity),
    )


def parse_verifier_output(content: str) -> VerifierOutput:
    """
    Parse and validate the remote answer.

    Raises:
        ResponseParseError: Not a JSON object.
        ValidationError: Missing keys or out-of-set enum values.
    """
    data = parse_json_response(content)
    return VerifierOutput.model_validate(data)


class SmearVerifier:
    """
    Remote verification stage.

    Holds no per-scan state; one call to the remote model per verify().
    It does not fall back itself: every failure surfaces as VerificationError.
    """

    def __init__(self, client: InferenceClient | None = None):
        self.client = client or get_inference_client()

    async def verify(
        self,
        image: bytes | str | InlineImage,
        patient_context: str,
        preliminary: ClassifierOutput,
    ) -> VerifierOutput:
        """
        Verify or correct the preliminary call against the smear image.

        Args:
            image: Original image payload (bytes, base64, data URL) or an InlineImage.
            patient_context: Free-text patient information.
            preliminary: Local classifier output, offered as a hint.

        Returns:
            Validated VerifierOutput.

        Raises:
            VerificationError: Transport, parse or schema failure.
        """
        start_time = time.perf_counter()

        try:
            inline = image if isinstance(image, InlineImage) else to_inline_image(image)
            prompt = build_verification_prompt(patient_context, preliminary)
            content = await self.client.generate(prompt, image=inline)
            result = parse_verifier_output(content)
        except (RemoteInferenceError, ResponseParseError, DecodeError) as e:
            logger.warning("Smear verification failed", error=str(e), error_type=type(e).__name__)
            raise VerificationError(str(e)) from e
        except ValidationError as e:
            logger.warning(
                "Smear verification response failed schema validation",
                error_count=e.error_count(),
                fields=[".".join(str(p) for p in err["loc"]) for err in e.errors()],
            )
            raise VerificationError(f"Remote response failed schema validation: {e}") from e
        except Exception as e:
            logger.exception("Unexpected error during smear verification", error=str(e))
            raise VerificationError(f"Unexpected verification failure: {e}") from e

        processing_time = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Smear verification complete",
            infected=result.is_infected,
            species=result.species.value,
            parasitemia=result.parasitemia_percent,
            confidence=result.confidence,
            processing_time_ms=processing_time,
        )
        return result


# Singleton instance for dependency injection
_verifier: SmearVerifier | None = None


def get_verifier() -> SmearVerifier:
    """Get the shared smear verifier."""
    global _verifier
    if _verifier is None:
        _verifier = SmearVerifier()
    return _verifier
