"""
Dataset utilities for training and testing.

A dataset is a list of ``(input, label, is_validation)`` samples. Workers
materialize their shard once and iterate over it every iteration.
"""

from typing import List, Tuple
import torch
import logging

logger = logging.getLogger(__name__)


Sample = Tuple[torch.Tensor, int, bool]


def create_dummy_dataset(
    num_samples: int,
    input_size: int,
    num_classes: int,
    validation_ratio: float = 0.2,
    noise: float = 0.5,
    seed: int = 42
) -> List[Sample]:
    """
    Create a synthetic classification dataset.

    Every class has a random center; samples are the center plus gaussian
    noise, so a small network can actually learn the task.

    Args:
        num_samples: Number of samples to create
        input_size: Length of each input row
        num_classes: Number of classes
        validation_ratio: Fraction of samples flagged for validation
        noise: Standard deviation of the noise around each center
        seed: Random seed for reproducibility across workers

    Returns:
        List of (input, label, is_validation) samples
    """
    if num_classes <= 0 or input_size <= 0:
        raise ValueError("input_size and num_classes must be positive")
    if not 0.0 <= validation_ratio < 1.0:
        raise ValueError(f"validation_ratio must be in [0, 1), got {validation_ratio}")

    generator = torch.Generator().manual_seed(seed)
    centers = torch.randn(num_classes, input_size, generator=generator) * 2.0

    dataset = []
    for _ in range(num_samples):
        label = int(torch.randint(0, num_classes, (1,), generator=generator).item())
        input = centers[label] + noise * torch.randn(input_size, generator=generator)
        is_validation = bool(torch.rand(1, generator=generator).item() < validation_ratio)
        dataset.append((input, label, is_validation))

    logger.debug(f"Created dummy dataset: {num_samples} samples, {num_classes} classes")
    return dataset


def partition_dataset(dataset: List[Sample], rank: int, world_size: int) -> List[Sample]:
    """
    Shard of the dataset owned by one worker.

    Uses interleaved sharding: worker ``rank`` gets samples
    ``rank, rank + world_size, rank + 2 * world_size, ...``.

    Args:
        dataset: Full dataset
        rank: Worker rank (0 to world_size-1)
        world_size: Total number of workers

    Returns:
        Samples assigned to this worker
    """
    if world_size <= 0:
        raise ValueError(f"world_size must be positive, got {world_size}")
    if not 0 <= rank < world_size:
        raise ValueError(f"rank must be in [0, {world_size}), got {rank}")

    shard = dataset[rank::world_size]
    logger.info(f"Rank {rank}/{world_size}: {len(shard)} of {len(dataset)} samples")
    return shard


def split_dataset(dataset: List[Sample]) -> Tuple[List[Sample], List[Sample]]:
    """Separate training samples from validation samples."""
    training = [sample for sample in dataset if not sample[2]]
    validation = [sample for sample in dataset if sample[2]]
    return training, validation
