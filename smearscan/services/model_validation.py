"""
Offline validation of the trained smear classifier.

Runs a labelled sample of cell images (``Parasitized/`` and ``Uninfected/``
sub-directories, the layout the training set ships in) through the same
preprocessing as live scans and reports binary classification metrics.
"""

from pathlib import Path

import numpy as np
from pydantic import BaseModel, Field

from smearscan.config.logging_config import get_logger
from smearscan.models.diagnosis_models import ModelState
from smearscan.services.classifier import INFECTION_THRESHOLD, MalariaClassifier, TensorScope
from smearscan.services.errors import DecodeError, ModelLoadError
from smearscan.services.image_preprocessor import preprocess

logger = get_logger(__name__)

CLASS_DIRECTORIES = {"Parasitized": 1, "Uninfected": 0}
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg"}


class ConfusionMatrix(BaseModel):
    """Binary confusion matrix counts."""
    tp: int = Field(default=0, ge=0)
    tn: int = Field(default=0, ge=0)
    fp: int = Field(default=0, ge=0)
    fn: int = Field(default=0, ge=0)


class ValidationMetrics(BaseModel):
    """
    Binary classification metrics.

    Attributes:
        total: Number of evaluated samples.
        accuracy: (tp + tn) / total.
        sensitivity: tp / (tp + fn), recall on parasitized cells.
        specificity: tn / (tn + fp).
        precision: tp / (tp + fp).
        f1_score: Harmonic mean of precision and sensitivity.
        confusion_matrix: Raw counts.
        skipped: Files that could not be decoded.
    """
    total: int = Field(..., ge=0)
    accuracy: float
    sensitivity: float
    specificity: float
    precision: float
    f1_score: float
    confusion_matrix: ConfusionMatrix
    skipped: int = Field(default=0, ge=0)


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def calculate_metrics(
    scores: list[float],
    labels: list[int],
    threshold: float = INFECTION_THRESHOLD,
) -> ValidationMetrics:
    """
    Compute metrics from sigmoid scores and 0/1 labels.

    Any metric with a zero denominator is reported as 0.0.
    """
    if len(scores) != len(labels):
        raise ValueError("scores and labels must have the same length")

    matrix = ConfusionMatrix()
    for score, label in zip(scores, labels):
        predicted = 1 if score >= threshold else 0
        if predicted == 1 and label == 1:
            matrix.tp += 1
        elif predicted == 0 and label == 0:
            matrix.tn += 1
        elif predicted == 1 and label == 0:
            matrix.fp += 1
        else:
            matrix.fn += 1

    sensitivity = _ratio(matrix.tp, matrix.tp + matrix.fn)
    precision = _ratio(matrix.tp, matrix.tp + matrix.fp)

    return ValidationMetrics(
        total=len(scores),
        accuracy=_ratio(matrix.tp + matrix.tn, len(scores)),
        sensitivity=sensitivity,
        specificity=_ratio(matrix.tn, matrix.tn + matrix.fp),
        precision=precision,
        f1_score=_ratio(2 * precision * sensitivity, precision + sensitivity),
        confusion_matrix=matrix,
    )


def collect_samples(dataset_dir: Path, per_class: int) -> list[tuple[Path, int]]:
    """List up to ``per_class`` image files from each class directory."""
    samples = []
    for directory, label in CLASS_DIRECTORIES.items():
        class_dir = dataset_dir / directory
        if not class_dir.is_dir():
            logger.warning("Class directory missing", path=str(class_dir))
            continue
        files = sorted(
            p for p in class_dir.iterdir()
            if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
        )[:per_class]
        logger.info("Collected validation images", directory=directory, count=len(files))
        samples.extend((path, label) for path in files)
    return samples


async def validate_model(
    classifier: MalariaClassifier,
    dataset_dir: str | Path,
    per_class: int = 100,
    batch_size: int = 32,
) -> ValidationMetrics:
    """
    Score a labelled sample with the loaded model.

    Raises:
        ModelLoadError: The classifier could not load its artifact.
    """
    state = await classifier.load_model()
    model = classifier.loaded_model
    if state is not ModelState.READY or model is None:
        raise ModelLoadError(
            f"Classifier is {state.value}: {classifier.last_load_error or 'no model loaded'}"
        )

    tensors, labels, skipped = [], [], 0
    for path, label in collect_samples(Path(dataset_dir), per_class):
        try:
            tensors.append(preprocess(path.read_bytes()))
            labels.append(label)
        except DecodeError as e:
            skipped += 1
            logger.warning("Skipping unreadable image", path=str(path), error=str(e))

    scores: list[float] = []
    for offset in range(0, len(tensors), batch_size):
        with TensorScope() as scope:
            batch = scope.track(np.stack(tensors[offset:offset + batch_size]))
            raw = scope.track(model.predict(batch, verbose=0))
            scores.extend(float(s) for s in np.asarray(raw).reshape(-1))

    metrics = calculate_metrics(scores, labels).model_copy(update={"skipped": skipped})
    logger.info(
        "Model validation complete",
        total=metrics.total,
        accuracy=round(metrics.accuracy, 4),
        sensitivity=round(metrics.sensitivity, 4),
        specificity=round(metrics.specificity, 4),
        skipped=skipped,
    )
    return metrics
