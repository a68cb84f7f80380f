"""
Shared fixtures for the SmearScan test suite.

Images are generated in memory with Pillow; the Keras model and the remote
inference client are replaced by small fakes so nothing touches the network
or needs TensorFlow.
"""

import base64
import io
import json
import random
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
from PIL import Image

from smearscan.config.config import Settings
from smearscan.services.classifier import MalariaClassifier
from smearscan.services.inference_client import InferenceClient


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def make_image_bytes(size=(200, 150), mode="RGB", fmt="PNG", color=None, seed=0) -> bytes:
    """Encode a small image; random noise unless a flat colour is given."""
    if color is not None:
        image = Image.new(mode, size, color)
    else:
        rng = np.random.default_rng(seed)
        channels = {"RGB": 3, "RGBA": 4}.get(mode)
        shape = (size[1], size[0], channels) if channels else (size[1], size[0])
        image = Image.fromarray(rng.integers(0, 256, shape, dtype=np.uint8))
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def png_base64(png_bytes) -> str:
    return to_base64(png_bytes)


@pytest.fixture
def corrupt_bytes() -> bytes:
    return b"\x89PNG\r\n\x1a\nthis is not really an image"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with no real artifact and no simulated latency."""
    return Settings(
        llm_api_key="test-key",
        model_path=str(tmp_path / "missing" / "model.keras"),
        preload_model=False,
        simulation_delay_min_ms=0,
        simulation_delay_max_ms=0,
    )


# ---------------------------------------------------------------------------
# Fake Keras model
# ---------------------------------------------------------------------------

class FakeLayer:
    def __init__(self, activation="sigmoid"):
        self.activation = activation

    def get_config(self):
        return {"name": "output", "activation": self.activation}


class FakeModel:
    """
    Stand-in for a loaded Keras model.

    ``score`` is either a constant sigmoid output or a callable taking the
    batch and returning one score per sample.
    """

    def __init__(
        self,
        score=0.92,
        input_shape=(None, 128, 128, 3),
        output_shape=(None, 1),
        activation="sigmoid",
        error: Exception | None = None,
    ):
        self.score = score
        self.input_shape = input_shape
        self.output_shape = output_shape
        self.layers = [FakeLayer(activation)]
        self.error = error
        self.batch_shapes: list[tuple] = []

    def predict(self, batch, verbose=0):
        self.batch_shapes.append(tuple(batch.shape))
        if self.error is not None:
            raise self.error
        if callable(self.score):
            scores = self.score(batch)
        else:
            scores = [self.score] * batch.shape[0]
        return np.asarray(scores, dtype=np.float32).reshape(-1, 1)


class CountingLoader:
    """Model loader that records how often it was called."""

    def __init__(self, model=None, error: Exception | None = None):
        self.model = model if model is not None else FakeModel()
        self.error = error
        self.calls = 0

    def __call__(self, path):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.model


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel(score=0.92)


@pytest.fixture
def ready_classifier(settings, fake_model) -> MalariaClassifier:
    """Classifier whose loader returns the fake model."""
    return MalariaClassifier(
        settings=settings,
        model_loader=CountingLoader(fake_model),
        rng=random.Random(7),
    )


@pytest.fixture
def unavailable_classifier(settings) -> MalariaClassifier:
    """Classifier pointed at a missing artifact, so it simulates."""
    return MalariaClassifier(settings=settings, rng=random.Random(11))


# ---------------------------------------------------------------------------
# Remote inference
# ---------------------------------------------------------------------------

VERIFIER_RESPONSE = {
    "isInfected": True,
    "species": "Plasmodium falciparum",
    "stage": "Ring Stage",
    "parasitemia": 2.3,
    "severity": "Moderate",
    "confidence": 92,
    "explanation": "Multiple delicate ring forms, several RBCs with double infection.",
    "treatmentRecommendation": "Artemether-lumefantrine, 6-dose regimen over 3 days.",
    "clinicalNotes": "Repeat smear at 48h. Watch for altered consciousness.",
}


def fenced(payload: dict) -> str:
    return f"```json\n{json.dumps(payload)}\n```"


@pytest.fixture
def fake_client() -> MagicMock:
    """Inference client whose generate() is an AsyncMock."""
    client = MagicMock(spec=InferenceClient)
    client.generate = AsyncMock(return_value=fenced(VERIFIER_RESPONSE))
    return client
