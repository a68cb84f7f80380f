"""
Lab-risk predictor.

Estimates malaria likelihood from CBC / biochemistry values through the
shared remote inference client, and extracts those values from a photo of
a lab report. Neither operation blocks the caller on a remote failure:
prediction degrades to an "Unknown" result, extraction to an empty panel.
"""

import math
import re
import time

from pydantic import ValidationError

from smearscan.config.logging_config import get_logger
from smearscan.models.diagnosis_models import LabInput, LabRiskResult, RiskLevel
from smearscan.services.errors import (
    LabPredictionError,
    RemoteInferenceError,
    ResponseParseError,
)
from smearscan.services.image_preprocessor import to_inline_image
from smearscan.services.inference_client import (
    InferenceClient,
    get_inference_client,
    parse_json_response,
)

logger = get_logger(__name__)


RISK_PROMPT = """Act as an Expert Clinical Diagnostic AI. Evaluate the likelihood of Malaria based on the provided Hematology (CBC) and Biochemistry data.

Input Data (only measured values are listed; anything absent is unknown, not zero):
{lab_values}

Clinical Logic to Apply:
1. Thrombocytopenia (Low Platelets) is a hallmark of malaria. <150 x10^3/uL is suspicious, <50 x10^3/uL is severe.
2. Anemia (Low Hb): Malaria causes hemolysis (destruction of RBCs).
3. Leukopenia (Low WBC): Common, unlike bacterial infections which often cause Leukocytosis.
4. Hyperbilirubinemia: Caused by hemolysis.
5. Fever History: Strong clinical correlate.

Task:
- Calculate a probability score (0-100).
- Assign a Risk Level (Low, Medium, High).
- 'explanation': A clinically sound paragraph explaining why the risk is assigned. Explicitly mention which values are abnormal and how they correlate to malaria pathology.
- 'recommendation': The best course of action (e.g. "Urgent Malaria Smear and RDT required", "Check for Dengue as differential due to severe thrombocytopenia").

RESPONSE FORMAT: Return ONLY a valid JSON object with these exact keys:
{{
  "probability": number (0-100),
  "riskLevel": string ("Low", "Medium", or "High"),
  "explanation": string (detailed clinical reasoning),
  "recommendation": string (actionable next steps)
}}"""

EXTRACTION_PROMPT = """Extract the following values from this lab report image:
- Hemoglobin (g/dL)
- Platelet Count (10^3/uL)
- WBC Count (cells/uL)
- Total Bilirubin (mg/dL)

If a value is missing or unclear, set it to null. Never guess and never use 0 for a missing value.

RESPONSE FORMAT: Return ONLY a valid JSON object with these keys:
{
  "hemoglobin": number or null,
  "platelets": number or null,
  "wbc": number or null,
  "bilirubin": number or null
}"""

LAB_FIELD_LABELS = {
    "hemoglobin": "Hemoglobin (g/dL)",
    "platelets": "Platelet Count (10^3/uL)",
    "wbc_count": "WBC Count (cells/uL)",
    "bilirubin": "Total Bilirubin (mg/dL)",
    "has_fever": "Fever",
}

# Remote JSON key -> LabInput field
EXTRACTED_FIELDS = {
    "hemoglobin": "hemoglobin",
    "platelets": "platelets",
    "wbc": "wbc_count",
    "bilirubin": "bilirubin",
}

# Leading number with optional thousands separators, then an optional unit
LAB_VALUE_PATTERN = re.compile(
    r"^\s*([+-]?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?|[+-]?\.\d+)(?:\s*[A-Za-z%\u00b5/].*)?\s*$"
)

UNAVAILABLE_EXPLANATION = "AI service unavailable. Unable to process lab parameters."
UNAVAILABLE_RECOMMENDATION = "Consult a healthcare provider."


def unavailable_result() -> LabRiskResult:
    """Safe default returned whenever the remote prediction fails."""
    return LabRiskResult(
        probability=0,
        risk_level=RiskLevel.UNKNOWN,
        explanation=UNAVAILABLE_EXPLANATION,
        recommendation=UNAVAILABLE_RECOMMENDATION,
        available=False,
    )


def format_lab_values(lab_input: LabInput) -> str:
    """Render the provided values as labelled lines; unknown fields are left out."""
    values = lab_input.known_values()
    if not values:
        return "No laboratory values provided."

    lines = []
    for field, value in values.items():
        if isinstance(value, bool):
            value = "Yes" if value else "No"
        lines.append(f"- {LAB_FIELD_LABELS[field]}: {value}")
    return "\n".join(lines)


def build_risk_prompt(lab_input: LabInput) -> str:
    return RISK_PROMPT.format(lab_values=format_lab_values(lab_input))


def _coerce_lab_value(value) -> float | None:
    """
    Accept finite non-negative numbers; anything else is unknown.

    Strings as printed on a report are read too: "5,000" and "12.5 g/dL"
    give 5000.0 and 12.5. Ranges and decimal commas are not guessed at.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        match = LAB_VALUE_PATTERN.match(value)
        if match is None:
            return None
        value = float(match.group(1).replace(",", ""))
    if not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value) or value < 0:
        return None
    return value


def parse_extracted_values(data: dict) -> LabInput:
    """
    Keep only the fields the remote model actually read.

    Null, missing, or non-numeric fields are omitted rather than defaulted,
    since zero is a valid lab value.
    """
    values = {}
    for key, field in EXTRACTED_FIELDS.items():
        value = _coerce_lab_value(data.get(key))
        if value is not None:
            values[field] = value
    return LabInput(**values)


class LabRiskPredictor:
    """
    Lab-value malaria risk assessment.

    Shares the remote inference client with the smear verifier and is
    otherwise independent of the smear pipeline.
    """

    def __init__(self, client: InferenceClient | None = None):
        self.client = client or get_inference_client()

    async def predict_risk(self, lab_input: LabInput) -> LabRiskResult:
        """
        Predict malaria risk from lab values.

        Returns the "Unknown" default on any remote or parse failure.
        """
        start_time = time.perf_counter()
        logger.info("Predicting lab risk", provided_fields=sorted(lab_input.known_values()))

        try:
            result = await self._request_prediction(lab_input)
        except LabPredictionError as e:
            logger.warning("Lab risk prediction failed, returning default", error=str(e))
            return unavailable_result()

        processing_time = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Lab risk predicted",
            probability=result.probability,
            risk_level=result.risk_level.value,
            processing_time_ms=processing_time,
        )
        return result

    async def _request_prediction(self, lab_input: LabInput) -> LabRiskResult:
        try:
            content = await self.client.generate(build_risk_prompt(lab_input))
            data = parse_json_response(content)
            result = LabRiskResult.model_validate(data)
        except (RemoteInferenceError, ResponseParseError, ValidationError) as e:
            raise LabPredictionError(str(e)) from e
        except Exception as e:
            logger.exception("Unexpected error predicting lab risk", error=str(e))
            raise LabPredictionError(f"Unexpected lab prediction failure: {e}") from e

        if result.risk_level is RiskLevel.UNKNOWN:
            raise LabPredictionError("Remote model returned a reserved risk level")
        return result

    async def extract_from_image(self, raw_image: bytes | str) -> LabInput:
        """
        Read lab values off a photographed or scanned report.

        Returns a partial LabInput; an empty one if the remote call fails.

        Raises:
            DecodeError: The payload is not a readable image.
        """
        inline = to_inline_image(raw_image)

        try:
            content = await self.client.generate(EXTRACTION_PROMPT, image=inline)
            data = parse_json_response(content)
        except (RemoteInferenceError, ResponseParseError) as e:
            logger.warning("Lab report extraction failed", error=str(e))
            return LabInput()

        extracted = parse_extracted_values(data)
        logger.info(
            "Lab report extracted",
            extracted_fields=sorted(extracted.known_values()),
            raw_keys=sorted(data),
        )
        return extracted


# Singleton instance for dependency injection
_lab_risk_predictor: LabRiskPredictor | None = None


def get_lab_risk_predictor() -> LabRiskPredictor:
    """Get the shared lab-risk predictor."""
    global _lab_risk_predictor
    if _lab_risk_predictor is None:
        _lab_risk_predictor = LabRiskPredictor()
    return _lab_risk_predictor
