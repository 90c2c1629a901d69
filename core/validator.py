"""
Classification accuracy bookkeeping.
"""

import logging
from dataclasses import dataclass

import torch

logger = logging.getLogger(__name__)


@dataclass
class ValidationStats:
    """Running count of evaluated and correctly classified samples."""

    total_num: int = 0
    correct_num: int = 0

    def validation_correct(self):
        self.total_num += 1
        self.correct_num += 1

    def validation_incorrect(self):
        self.total_num += 1

    def merge(self, other: 'ValidationStats'):
        """Add the counts of another accumulator to this one."""
        self.total_num += other.total_num
        self.correct_num += other.correct_num

    def __add__(self, other: 'ValidationStats') -> 'ValidationStats':
        return ValidationStats(
            total_num=self.total_num + other.total_num,
            correct_num=self.correct_num + other.correct_num
        )

    def reset(self):
        self.total_num = 0
        self.correct_num = 0

    def copy(self) -> 'ValidationStats':
        return ValidationStats(self.total_num, self.correct_num)

    @property
    def accuracy(self) -> float:
        if self.total_num == 0:
            return 0.0
        return self.correct_num / self.total_num

    @property
    def error(self) -> float:
        if self.total_num == 0:
            return 0.0
        return 1.0 - self.correct_num / self.total_num


def first_argmax(row: torch.Tensor) -> int:
    """Index of the maximal value; ties resolve to the earliest index."""
    values = row.reshape(-1).tolist()
    best = 0
    for i in range(1, len(values)):
        if values[i] > values[best]:
            best = i
    return best


class Validator:
    """
    Evaluates a network on labeled samples with forward passes only.
    """

    def __init__(self, network):
        self.network = network
        self.stats = ValidationStats()

    def validate(self, input: torch.Tensor, label: int) -> bool:
        """
        Classify one sample and record whether the prediction was correct.

        Args:
            input: Input row
            label: Expected class index

        Returns:
            True if the predicted class equals the label

        Raises:
            ValueError: If the input holds more than one row
        """
        if input.dim() == 1:
            input = input.unsqueeze(0)
        if input.shape[0] != 1:
            raise ValueError(f"Expected a single input row, got {input.shape[0]}")
        output = self.network.feed_forward(input)[-1]
        correct = first_argmax(output[0]) == label
        if correct:
            self.stats.validation_correct()
        else:
            self.stats.validation_incorrect()
        return correct

    def reset(self):
        self.stats.reset()


def generate_iteration_log(
    training_stats: ValidationStats,
    cross_validation_stats: ValidationStats,
    iteration: int
) -> str:
    """Human-readable summary of one training iteration."""
    return (
        f"=========================================================\n"
        f"Iteration: {iteration}\n"
        f"Training Error: {training_stats.error:.6f}\n"
        f"Cross Validation Error: {cross_validation_stats.error:.6f}\n"
        f"# of training inputs: {training_stats.total_num}\n"
        f"# of validation inputs: {cross_validation_stats.total_num}\n"
        f"========================================================="
    )
