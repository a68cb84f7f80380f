#!/usr/bin/env python3
"""
CLI script to validate the trained smear classifier on a labelled sample.

Usage:
    python -m smearscan.scripts.validate_model data/cell_images --per-class 100

The dataset directory must contain ``Parasitized/`` and ``Uninfected/``.
"""

import argparse
import asyncio
import sys

from smearscan.config.config import get_settings
from smearscan.config.logging_config import configure_logging
from smearscan.services.classifier import MalariaClassifier
from smearscan.services.errors import ModelLoadError
from smearscan.services.model_validation import validate_model


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate the smear classifier")
    parser.add_argument("dataset_dir", help="Directory with Parasitized/ and Uninfected/")
    parser.add_argument("--per-class", type=int, default=100, help="Images per class")
    parser.add_argument("--model-path", default=None, help="Override the configured model path")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Validate the model and print a metrics report."""
    args = parse_args(argv)
    settings = get_settings()
    if args.model_path:
        settings = settings.model_copy(update={"model_path": args.model_path})
    configure_logging(settings)

    print(f"📂 Model:   {settings.model_path}")
    print(f"🧪 Dataset: {args.dataset_dir} ({args.per_class} images per class)")
    print()

    classifier = MalariaClassifier(settings=settings)
    try:
        metrics = asyncio.run(validate_model(classifier, args.dataset_dir, args.per_class))
    except ModelLoadError as e:
        print(f"❌ Model not available: {e}")
        return 1

    matrix = metrics.confusion_matrix
    print("✅ Validation complete!")
    print()
    print("📊 Metrics:")
    print(f"   Samples:      {metrics.total} (skipped {metrics.skipped})")
    print(f"   Accuracy:     {metrics.accuracy * 100:.2f}%")
    print(f"   Sensitivity:  {metrics.sensitivity * 100:.2f}%")
    print(f"   Specificity:  {metrics.specificity * 100:.2f}%")
    print(f"   Precision:    {metrics.precision * 100:.2f}%")
    print(f"   F1 Score:     {metrics.f1_score * 100:.2f}%")
    print()
    print("🔢 Confusion matrix:")
    print(f"   TP={matrix.tp}  FN={matrix.fn}")
    print(f"   FP={matrix.fp}  TN={matrix.tn}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
