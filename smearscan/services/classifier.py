"""
Local CNN smear classifier.

The classifier owns the lifecycle of the trained Keras artifact:

    unloaded -> loading -> ready          (artifact loaded and validated)
    unloaded -> loading -> unavailable    (missing / corrupt / wrong shape)

Inference is delegated to one of two strategies:
1. KerasInferenceStrategy - real forward pass over the loaded model
2. SimulatedInferenceStrategy - calibrated random stand-in used whenever
   the model is unavailable or the forward pass faults

predict() never raises. The worst case is a simulated result, which is
labelled as such through ClassifierOutput.source.
"""

import asyncio
import random
import threading
import time
from pathlib import Path
from typing import Any, Callable, Protocol

import numpy as np

from smearscan.config.config import Settings, get_settings
from smearscan.config.logging_config import get_logger
from smearscan.models.diagnosis_models import (
    ClassifierOutput,
    InferenceSource,
    ModelState,
    Species,
    Stage,
    severity_for_parasitemia,
)
from smearscan.services.errors import ModelLoadError, ShapeMismatchError

logger = get_logger(__name__)


INFECTION_THRESHOLD = 0.5
CHANNELS = 3

# The network is a binary parasitized/uninfected model. Species and stage
# are placeholders until the remote verifier supplies the real call.
CANDIDATE_FINDINGS: tuple[tuple[Species, Stage], ...] = (
    (Species.FALCIPARUM, Stage.RING),
    (Species.VIVAX, Stage.TROPHOZOITE),
    (Species.MALARIAE, Stage.RING),
)
MODEL_SPECIES_CONFIDENCE = 0.65
MODEL_STAGE_CONFIDENCE = 0.60


def estimate_parasitemia(score: float, rng: random.Random) -> float:
    """
    Coarse parasitemia estimate from the network score.

    Bands: >0.9 -> 3-5%, >0.7 -> 1-3%, otherwise 0.2-1.2%, drawn uniformly.
    """
    if score > 0.9:
        return rng.uniform(3.0, 5.0)
    if score > 0.7:
        return rng.uniform(1.0, 3.0)
    return rng.uniform(0.2, 1.2)


def pick_candidate_finding(rng: random.Random) -> tuple[Species, Stage]:
    """Draw a placeholder species/stage pair."""
    return rng.choice(CANDIDATE_FINDINGS)


def elapsed_ms(started: float) -> int:
    return max(0, int((time.perf_counter() - started) * 1000))


# ============================================================================
# Tensor lifetime
# ============================================================================

class TensorScope:
    """
    Tracks the temporary arrays of one forward pass and drops them on exit.

    Used as a context manager so the batched input and the raw network
    output are released on the failure path too. ``live_count()`` reports
    how many tracked tensors are currently alive across all scopes.
    """

    _live = 0
    _lock = threading.Lock()

    def __init__(self):
        self._tensors: list[Any] = []

    def track(self, tensor: Any) -> Any:
        self._tensors.append(tensor)
        with TensorScope._lock:
            TensorScope._live += 1
        return tensor

    def release(self) -> None:
        released = len(self._tensors)
        self._tensors.clear()
        with TensorScope._lock:
            TensorScope._live -= released

    @classmethod
    def live_count(cls) -> int:
        with cls._lock:
            return cls._live

    def __enter__(self) -> "TensorScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


# ============================================================================
# Strategies
# ============================================================================

class InferenceStrategy(Protocol):
    """Produces a ClassifierOutput for one preprocessed tensor."""

    source: InferenceSource

    async def infer(self, tensor: np.ndarray, started: float) -> ClassifierOutput:
        ...


class KerasInferenceStrategy:
    """Runs the loaded Keras model and post-processes its sigmoid output."""

    source = InferenceSource.MODEL

    def __init__(self, model: Any, rng: random.Random, image_size: int = 128):
        self.model = model
        self.rng = rng
        self.expected_shape = (image_size, image_size, CHANNELS)

    async def infer(self, tensor: np.ndarray, started: float) -> ClassifierOutput:
        if tuple(tensor.shape) != self.expected_shape:
            raise ShapeMismatchError(self.expected_shape, tuple(tensor.shape))

        score = await asyncio.to_thread(self._forward, tensor)
        return self._interpret(score, started)

    def _forward(self, tensor: np.ndarray) -> float:
        """Blocking forward pass. All temporaries live inside one scope."""
        with TensorScope() as scope:
            batched = scope.track(np.expand_dims(tensor, axis=0))
            raw = scope.track(self.model.predict(batched, verbose=0))
            values = np.asarray(raw, dtype=np.float32).reshape(-1)
            if values.size != 1:
                raise ShapeMismatchError((1, 1), tuple(np.shape(raw)))
            score = float(values[0])

        if not np.isfinite(score) or not 0.0 <= score <= 1.0:
            raise ValueError(f"Classifier returned a non-probability score: {score}")
        return score

    def _interpret(self, score: float, started: float) -> ClassifierOutput:
        is_infected = score > INFECTION_THRESHOLD
        confidence = score if is_infected else 1.0 - score

        if is_infected:
            parasitemia = estimate_parasitemia(score, self.rng)
            species, stage = pick_candidate_finding(self.rng)
        else:
            parasitemia = 0.0
            species, stage = Species.NONE, Stage.NONE

        return ClassifierOutput(
            is_infected=is_infected,
            confidence=confidence,
            species=species,
            species_confidence=MODEL_SPECIES_CONFIDENCE,
            stage=stage,
            stage_confidence=MODEL_STAGE_CONFIDENCE,
            parasitemia_percent=parasitemia,
            severity=severity_for_parasitemia(parasitemia),
            processing_time_ms=elapsed_ms(started),
            raw_score=score,
            source=self.source,
        )


class SimulatedInferenceStrategy:
    """
    Plausible stand-in used when the trained artifact is not available.

    Roughly 50/50 infected split, confidence 0.65-0.95 when infected and
    0.05-0.35 when clear, after an artificial 800-1200ms delay.
    """

    source = InferenceSource.SIMULATION

    def __init__(
        self,
        rng: random.Random,
        delay_range_ms: tuple[int, int] = (800, 1200),
    ):
        self.rng = rng
        self.delay_range_ms = delay_range_ms

    async def infer(self, tensor: np.ndarray, started: float) -> ClassifierOutput:
        low, high = self.delay_range_ms
        await asyncio.sleep(self.rng.uniform(low, high) / 1000)

        is_infected = self.rng.random() > 0.5
        confidence = self.rng.random() * 0.3 + (0.65 if is_infected else 0.05)

        if is_infected:
            parasitemia = self.rng.uniform(0.5, 4.5)
            species, stage = pick_candidate_finding(self.rng)
        else:
            parasitemia = 0.0
            species, stage = Species.NONE, Stage.NONE

        return ClassifierOutput(
            is_infected=is_infected,
            confidence=confidence,
            species=species,
            species_confidence=self.rng.uniform(0.65, 0.85),
            stage=stage,
            stage_confidence=self.rng.uniform(0.60, 0.75),
            parasitemia_percent=parasitemia,
            severity=severity_for_parasitemia(parasitemia),
            processing_time_ms=elapsed_ms(started),
            raw_score=None,
            source=self.source,
        )


# ============================================================================
# Artifact loading
# ============================================================================

ModelLoader = Callable[[str], Any]


def load_keras_model(path: str) -> Any:
    """
    Load the Keras artifact from disk.

    Keras is imported lazily so the rest of the service starts without it.
    """
    if not Path(path).is_file():
        raise ModelLoadError(f"Model artifact not found: {path}")

    import keras

    try:
        return keras.saving.load_model(path, compile=False)
    except Exception as e:
        raise ModelLoadError(f"Failed to load model artifact {path}: {e}") from e


def _output_activation(model: Any) -> str | None:
    layers = getattr(model, "layers", None) or []
    if not layers:
        return None
    activation = layers[-1].get_config().get("activation")
    if activation is None or isinstance(activation, str):
        return activation
    return getattr(activation, "__name__", None)


def validate_model_signature(model: Any, image_size: int = 128) -> None:
    """
    Reject artifacts that do not take (None, size, size, 3) and emit one sigmoid unit.

    Raises:
        ModelLoadError: If the artifact does not satisfy the contract.
    """
    expected_input = (None, image_size, image_size, CHANNELS)
    input_shape = tuple(getattr(model, "input_shape", None) or ())
    if input_shape != expected_input:
        raise ModelLoadError(
            f"Model input shape {input_shape} does not match {expected_input}"
        )

    output_shape = tuple(getattr(model, "output_shape", None) or ())
    if output_shape != (None, 1):
        raise ModelLoadError(f"Model output shape {output_shape} is not a single unit")

    activation = _output_activation(model)
    if activation != "sigmoid":
        raise ModelLoadError(f"Model output activation {activation!r} is not sigmoid")


# ============================================================================
# Classifier
# ============================================================================

class MalariaClassifier:
    """
    Lazily-loaded CNN classifier with a simulated fallback.

    One instance is shared by every concurrent scan. The loaded model is
    read-only after it reaches READY; only the load transition is guarded,
    by a single in-flight task that concurrent callers await together.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        model_loader: ModelLoader | None = None,
        rng: random.Random | None = None,
        simulation: InferenceStrategy | None = None,
    ):
        """
        Initialize the classifier.

        Args:
            settings: Application settings. Uses default if not provided.
            model_loader: Callable that loads the artifact from a path.
            rng: Random source for the post-processing and simulation draws.
            simulation: Fallback strategy. Built from settings if not provided.
        """
        self.settings = settings or get_settings()
        self._model_loader = model_loader or load_keras_model
        self._rng = rng or random.Random()
        self._simulation = simulation or SimulatedInferenceStrategy(
            self._rng,
            (self.settings.simulation_delay_min_ms, self.settings.simulation_delay_max_ms),
        )
        self._model_strategy: KerasInferenceStrategy | None = None
        self._state = ModelState.UNLOADED
        self._load_task: asyncio.Task | None = None
        self.load_attempts = 0
        self.last_load_error: str | None = None

    def get_state(self) -> ModelState:
        return self._state

    @property
    def loaded_model(self) -> Any | None:
        """The validated Keras model, or None unless READY."""
        if self._model_strategy is None:
            return None
        return self._model_strategy.model

    async def load_model(self) -> ModelState:
        """
        Load the artifact once.

        Returns immediately when already READY or UNAVAILABLE. Callers that
        arrive while a load is in flight wait for that same load.
        """
        if self._state in (ModelState.READY, ModelState.UNAVAILABLE):
            return self._state

        if self._load_task is None:
            self._state = ModelState.LOADING
            self._load_task = asyncio.create_task(self._load())

        await asyncio.shield(self._load_task)
        return self._state

    async def reload_model(self) -> ModelState:
        """Explicitly retry loading, e.g. after a new artifact was deployed."""
        if self._load_task is not None and not self._load_task.done():
            await asyncio.shield(self._load_task)

        logger.info("Reloading smear classifier", previous_state=self._state.value)
        self._state = ModelState.UNLOADED
        self._model_strategy = None
        self._load_task = None
        return await self.load_model()

    async def _load(self) -> None:
        path = self.settings.model_path
        self.load_attempts += 1
        logger.info("Loading smear classifier", model_path=path, attempt=self.load_attempts)

        try:
            model = await asyncio.to_thread(self._model_loader, path)
            validate_model_signature(model, self.settings.image_size)
        except ModelLoadError as e:
            self._mark_unavailable(e)
            return
        except Exception as e:
            self._mark_unavailable(ModelLoadError(f"Unexpected error loading {path}: {e}"))
            return

        self._model_strategy = KerasInferenceStrategy(model, self._rng, self.settings.image_size)
        self.last_load_error = None
        self._state = ModelState.READY
        logger.info("Smear classifier ready", model_path=path)

    def _mark_unavailable(self, error: ModelLoadError) -> None:
        self._model_strategy = None
        self.last_load_error = str(error)
        self._state = ModelState.UNAVAILABLE
        logger.warning(
            "Smear classifier unavailable, using simulation mode",
            error=str(error),
            model_path=self.settings.model_path,
        )

    async def predict(self, tensor: np.ndarray) -> ClassifierOutput:
        """
        Classify one preprocessed smear tensor.

        Never raises: model faults (including ShapeMismatchError) are logged
        and answered by the simulation strategy.
        """
        started = time.perf_counter()

        if self._state in (ModelState.UNLOADED, ModelState.LOADING):
            await self.load_model()

        strategy = self._model_strategy if self._state is ModelState.READY else None
        if strategy is not None:
            try:
                output = await strategy.infer(tensor, started)
                logger.info(
                    "CNN inference complete",
                    raw_score=round(output.raw_score, 4),
                    infected=output.is_infected,
                    confidence=round(output.confidence, 4),
                    processing_time_ms=output.processing_time_ms,
                )
                return output
            except ShapeMismatchError as e:
                logger.error(
                    "Tensor shape mismatch, falling back to simulation",
                    expected=e.expected,
                    actual=e.actual,
                )
            except Exception as e:
                logger.exception("CNN inference failed, falling back to simulation", error=str(e))

        output = await self._simulation.infer(tensor, started)
        logger.info(
            "Simulated inference complete",
            infected=output.is_infected,
            confidence=round(output.confidence, 4),
            processing_time_ms=output.processing_time_ms,
        )
        return output


# Singleton instance for dependency injection
_classifier: MalariaClassifier | None = None


def get_classifier() -> MalariaClassifier:
    """
    Get the classifier singleton.

    Returns:
        The shared MalariaClassifier instance.
    """
    global _classifier
    if _classifier is None:
        _classifier = MalariaClassifier()
    return _classifier
