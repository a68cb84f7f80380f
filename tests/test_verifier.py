"""
Unit tests for the remote smear verifier.

Tests cover:
- Prompt construction with patient context and preliminary call
- Successful verification from fenced JSON
- Schema failures (unknown enum, missing key) and malformed answers
- Transport failures with the cause chained
"""

import json

import pytest

from conftest import VERIFIER_RESPONSE, fenced
from smearscan.models.diagnosis_models import (
    ClassifierOutput,
    InferenceSource,
    Severity,
    Species,
    Stage,
)
from smearscan.services.errors import RemoteInferenceError, VerificationError
from smearscan.services.image_preprocessor import InlineImage
from smearscan.services.verifier import SmearVerifier, build_verification_prompt


@pytest.fixture
def preliminary() -> ClassifierOutput:
    return ClassifierOutput(
        is_infected=True,
        confidence=0.92,
        species=Species.FALCIPARUM,
        species_confidence=0.65,
        stage=Stage.RING,
        stage_confidence=0.60,
        parasitemia_percent=3.4,
        severity=Severity.MODERATE,
        processing_time_ms=42,
        raw_score=0.92,
        source=InferenceSource.MODEL,
    )


@pytest.fixture
def verifier(fake_client) -> SmearVerifier:
    return SmearVerifier(client=fake_client)


class TestVerificationPrompt:
    def test_includes_context_and_preliminary_call(self, preliminary):
        prompt = build_verification_prompt("34M, fever 3 days, returned from Ghana", preliminary)

        assert "34M, fever 3 days, returned from Ghana" in prompt
        assert "Verify and Correct if Needed" in prompt
        assert "Predicted Species: Plasmodium falciparum" in prompt
        assert "Predicted Stage: Ring Stage" in prompt
        assert "Parasitemia: 3.40%" in prompt
        assert "Classifier Confidence: 92.0%" in prompt

    def test_lists_closed_enum_choices(self, preliminary):
        prompt = build_verification_prompt("", preliminary)
        assert '"Plasmodium ovale"' in prompt
        assert '"Gametocyte"' in prompt
        assert '"Severe"' in prompt
        assert '"treatmentRecommendation"' in prompt

    def test_blank_context(self, preliminary):
        prompt = build_verification_prompt("   ", preliminary)
        assert "Not provided" in prompt


class TestVerify:
    async def test_success(self, verifier, fake_client, png_bytes, preliminary):
        result = await verifier.verify(png_bytes, "fever", preliminary)

        assert result.is_infected is True
        assert result.species is Species.FALCIPARUM
        assert result.stage is Stage.RING
        assert result.parasitemia_percent == 2.3
        assert result.severity is Severity.MODERATE
        assert result.confidence == 92
        assert result.treatment_recommendation.startswith("Artemether")

        fake_client.generate.assert_awaited_once()
        image = fake_client.generate.await_args.kwargs["image"]
        assert isinstance(image, InlineImage)
        assert image.mime_type == "image/png"

    async def test_accepts_inline_image(self, verifier, fake_client, preliminary):
        inline = InlineImage(mime_type="image/jpeg", data_base64="AAAA")
        await verifier.verify(inline, "", preliminary)
        assert fake_client.generate.await_args.kwargs["image"] is inline

    async def test_bare_json(self, verifier, fake_client, png_bytes, preliminary):
        fake_client.generate.return_value = json.dumps(VERIFIER_RESPONSE)
        result = await verifier.verify(png_bytes, "", preliminary)
        assert result.species is Species.FALCIPARUM

    async def test_unknown_species_rejected(self, verifier, fake_client, png_bytes, preliminary):
        fake_client.generate.return_value = fenced({**VERIFIER_RESPONSE, "species": "Plasmodium knowlesi"})
        with pytest.raises(VerificationError, match="schema"):
            await verifier.verify(png_bytes, "", preliminary)

    async def test_missing_key_rejected(self, verifier, fake_client, png_bytes, preliminary):
        payload = {k: v for k, v in VERIFIER_RESPONSE.items() if k != "clinicalNotes"}
        fake_client.generate.return_value = fenced(payload)
        with pytest.raises(VerificationError):
            await verifier.verify(png_bytes, "", preliminary)

    async def test_out_of_range_parasitemia_rejected(self, verifier, fake_client, png_bytes, preliminary):
        fake_client.generate.return_value = fenced({**VERIFIER_RESPONSE, "parasitemia": 140})
        with pytest.raises(VerificationError):
            await verifier.verify(png_bytes, "", preliminary)

    async def test_malformed_json(self, verifier, fake_client, png_bytes, preliminary):
        fake_client.generate.return_value = "```json\n{\"isInfected\": true,\n```"
        with pytest.raises(VerificationError, match="Malformed"):
            await verifier.verify(png_bytes, "", preliminary)

    async def test_transport_error_is_chained(self, verifier, fake_client, png_bytes, preliminary):
        cause = RemoteInferenceError("connection reset")
        fake_client.generate.side_effect = cause

        with pytest.raises(VerificationError) as exc_info:
            await verifier.verify(png_bytes, "", preliminary)

        assert exc_info.value.__cause__ is cause

    async def test_undecodable_image(self, verifier, fake_client, corrupt_bytes, preliminary):
        with pytest.raises(VerificationError):
            await verifier.verify(corrupt_bytes, "", preliminary)
        fake_client.generate.assert_not_awaited()
