"""
Reduce functions applied by the aggregator to worker contributions.

The aggregator is the only writer of the accumulated values: each function
takes the contributions of one round and returns a fresh result.
"""

from typing import List, Tuple

from core.layer_parameter import LayerParameter, sum_parameters
from core.validator import ValidationStats


GradientContribution = Tuple[int, List[LayerParameter]]


def reduce_gradient_contributions(contributions: List[GradientContribution]) -> GradientContribution:
    """
    Sum the gradient contributions of one reduce round.

    Contributions with a count of zero are dummy pushes and are skipped.

    Args:
        contributions: ``(count, gradient_sum)`` pairs, one per worker

    Returns:
        Total count and summed gradients, or ``(0, [])`` if no worker
        contributed real gradients

    Raises:
        RuntimeError: If the gradient arrays have different lengths
    """
    total_count = 0
    total: List[LayerParameter] = []
    for count, gradients in contributions:
        if count == 0:
            continue
        total_count += count
        # Networks without backpropagation push counts but no gradients
        if not gradients:
            continue
        if not total:
            total = [gradient.clone() for gradient in gradients]
        else:
            total = sum_parameters(total, gradients)
    return total_count, total


def reduce_validation_stats(
    pairs: List[Tuple[ValidationStats, ValidationStats]]
) -> Tuple[ValidationStats, ValidationStats]:
    """Field-wise sum of (training, cross validation) stats pairs."""
    training = ValidationStats()
    cross_validation = ValidationStats()
    for training_stats, cross_validation_stats in pairs:
        training.merge(training_stats)
        cross_validation.merge(cross_validation_stats)
    return training, cross_validation
