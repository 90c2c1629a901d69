"""
Layer parameters and the arithmetic applied to arrays of them.

A parameter array always has one entry per layer. Non-learnable layers hold
the empty parameter (zero-sized weight and bias) so that gradient arrays,
parameter arrays and wire payloads keep the same length as the network.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

import torch


@dataclass(frozen=True)
class LayerParameter:
    """Weight matrix and bias vector of a single layer."""

    weight: torch.Tensor
    bias: torch.Tensor

    @classmethod
    def empty(cls, dtype: Optional[torch.dtype] = None) -> 'LayerParameter':
        """Create the empty parameter used by non-learnable layers."""
        dtype = dtype or torch.float32
        return cls(
            weight=torch.zeros(0, 0, dtype=dtype),
            bias=torch.zeros(0, dtype=dtype)
        )

    def is_empty(self) -> bool:
        return self.weight.numel() == 0 and self.bias.numel() == 0

    def clone(self) -> 'LayerParameter':
        return LayerParameter(weight=self.weight.clone(), bias=self.bias.clone())

    def zeros_like(self) -> 'LayerParameter':
        return LayerParameter(
            weight=torch.zeros_like(self.weight),
            bias=torch.zeros_like(self.bias)
        )

    def __add__(self, other: 'LayerParameter') -> 'LayerParameter':
        if self.is_empty() and other.is_empty():
            return self.clone()
        return LayerParameter(weight=self.weight + other.weight, bias=self.bias + other.bias)

    def allclose(self, other: 'LayerParameter', atol: float = 1e-6) -> bool:
        """
        Compare two parameters elementwise.

        Args:
            other: Parameter to compare with
            atol: Absolute tolerance

        Returns:
            True if shapes match and all values are within tolerance
        """
        if self.weight.shape != other.weight.shape or self.bias.shape != other.bias.shape:
            return False
        return (
            torch.allclose(self.weight, other.weight.to(self.weight.dtype), rtol=0.0, atol=atol)
            and torch.allclose(self.bias, other.bias.to(self.bias.dtype), rtol=0.0, atol=atol)
        )


def clone_parameters(parameters: Iterable[LayerParameter]) -> List[LayerParameter]:
    """Copy a parameter array so the copy can be handed to another owner."""
    return [parameter.clone() for parameter in parameters]


def zeros_like_parameters(parameters: Iterable[LayerParameter]) -> List[LayerParameter]:
    return [parameter.zeros_like() for parameter in parameters]


def sum_parameters(
    first: List[LayerParameter],
    second: List[LayerParameter]
) -> List[LayerParameter]:
    """
    Elementwise sum of two parameter arrays.

    Raises:
        RuntimeError: If the arrays have different lengths
    """
    if len(first) != len(second):
        raise RuntimeError(
            f"The number of layer parameters is not consistent: {len(first)} != {len(second)}"
        )
    return [a + b for a, b in zip(first, second)]


def parameters_allclose(
    first: List[LayerParameter],
    second: List[LayerParameter],
    atol: float = 1e-6
) -> bool:
    if len(first) != len(second):
        return False
    return all(a.allclose(b, atol=atol) for a, b in zip(first, second))


def apply_update(
    parameters: List[LayerParameter],
    gradient_sum: List[LayerParameter],
    count: int,
    stepsize: float
) -> List[LayerParameter]:
    """
    Apply one averaged gradient step.

    Computes ``p - (stepsize / count) * g`` for every layer and returns new
    tensors; the given parameters are left untouched. Empty entries are
    passed through unchanged.

    Args:
        parameters: Current parameter array
        gradient_sum: Sum of the gradient contributions
        count: Number of contributions folded into gradient_sum
        stepsize: Learning rate

    Returns:
        Updated parameter array

    Raises:
        ValueError: If count is not positive
        RuntimeError: If the arrays have different lengths
    """
    if count <= 0:
        raise ValueError(f"Cannot apply an update from {count} gradient contributions")
    if len(parameters) != len(gradient_sum):
        raise RuntimeError(
            f"The number of parameter gradients ({len(gradient_sum)}) is not equal to "
            f"the number of layers ({len(parameters)})"
        )

    factor = stepsize / count
    updated = []
    for parameter, gradient in zip(parameters, gradient_sum):
        if parameter.is_empty():
            updated.append(parameter)
            continue
        updated.append(LayerParameter(
            weight=parameter.weight - factor * gradient.weight,
            bias=parameter.bias - factor * gradient.bias
        ))
    return updated
