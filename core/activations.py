"""
Elementwise activation functions and their derivatives.

Derivatives receive both the layer input and the activation computed from
it, so functions like sigmoid can reuse the forward result.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional

import torch


@dataclass(frozen=True)
class ActivationFunction:
    """A named activation function with its derivative."""

    name: str
    forward: Callable[[torch.Tensor], torch.Tensor]
    derivative: Optional[Callable[[torch.Tensor, torch.Tensor], torch.Tensor]]

    @property
    def differentiable(self) -> bool:
        return self.derivative is not None


def _softmax(x: torch.Tensor) -> torch.Tensor:
    if x.dim() == 1:
        return torch.softmax(x, dim=0)
    return torch.softmax(x, dim=-1)


ACTIVATION_FUNCTIONS: Dict[str, ActivationFunction] = {
    "sigmoid": ActivationFunction(
        name="sigmoid",
        forward=torch.sigmoid,
        derivative=lambda x, y: y * (1.0 - y)
    ),
    "tanh": ActivationFunction(
        name="tanh",
        forward=torch.tanh,
        derivative=lambda x, y: 1.0 - y * y
    ),
    "relu": ActivationFunction(
        name="relu",
        forward=torch.relu,
        derivative=lambda x, y: (x > 0).to(x.dtype)
    ),
    "identity": ActivationFunction(
        name="identity",
        forward=lambda x: x.clone(),
        derivative=lambda x, y: torch.ones_like(x)
    ),
    # Softmax couples its outputs, so it is only usable together with a loss.
    "softmax": ActivationFunction(
        name="softmax",
        forward=_softmax,
        derivative=None
    ),
}

ACTIVATION_FUNCTIONS["linear"] = ACTIVATION_FUNCTIONS["identity"]


def get_activation_function(name: str) -> ActivationFunction:
    """
    Look up an activation function by name.

    Args:
        name: Function name (case-insensitive)

    Returns:
        The activation function

    Raises:
        ValueError: If the name is unknown
    """
    key = name.lower()
    if key not in ACTIVATION_FUNCTIONS:
        raise ValueError(
            f"Unsupported activation function: {name}. "
            f"Expected one of {sorted(ACTIVATION_FUNCTIONS)}"
        )
    return ACTIVATION_FUNCTIONS[key]
