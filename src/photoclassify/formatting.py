"""Turn ranked predictions into the short text shown to the user."""

from __future__ import annotations

from itertools import islice
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from photoclassify.ml.image_classifier import Prediction

PREDICTIONS_TO_SHOW = 2
NO_PREDICTIONS_MESSAGE = "No predictions. (Check console log.)"


def confidence_percentage(confidence: float) -> str:
    """Render a 0.0-1.0 score as a percentage string without the '%' sign.

    Scores of 1% and above keep one decimal, smaller ones keep two so they
    don't collapse to "0.0".
    """
    percentage = confidence * 100
    one_decimal = f"{percentage:.1f}"
    two_decimals = f"{percentage:.2f}"
    # Thresholds apply to the rounded value: 99.97 -> "100", 0.999 -> "1.0".
    if float(one_decimal) >= 100.0:
        return "100"
    if float(two_decimals) >= 1.0:
        return one_decimal
    return two_decimals


def short_name(classification: str) -> str:
    """Keep only the primary synonym of a label ("cat, feline" -> "cat")."""
    name, _, _ = classification.partition(",")
    return name


def prediction_lines(predictions: Iterable[Prediction]) -> list[str]:
    """Format the top predictions as "<name> - <confidence>%" lines.

    Predictions are expected in descending confidence order, as the
    classifier returns them.
    """
    return [
        f"{short_name(prediction.classification)} - {prediction.confidence_percentage}%"
        for prediction in islice(predictions, PREDICTIONS_TO_SHOW)
    ]


def format_predictions(predictions: Sequence[Prediction] | None) -> str:
    """Return the display text for a classification result.

    An absent or empty result means classification failed upstream and
    yields the fallback message.
    """
    if not predictions:
        return NO_PREDICTIONS_MESSAGE
    return "\n".join(prediction_lines(predictions))
