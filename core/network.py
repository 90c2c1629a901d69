"""
Feed-forward neural network built from an ordered list of layers.

Activation lists hold the network input at position 0 followed by the
activation of every layer, so ``activations[i]`` is the input of layer ``i``
and ``activations[i + 1]`` its output. Error lists start at the error with
respect to the output of layer 0 (computed inside layer 1's backward call)
and end with the output layer's error.
"""

import logging
from typing import List, Optional, Union

import torch

from core.config import NetworkConfig
from core.layer_parameter import LayerParameter, clone_parameters
from core.layers import LayerBase, ActivationWithLossLayer, create_layer

logger = logging.getLogger(__name__)


def create_output_vector(label: int, num_output: int, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """One-hot encode a class label as a single-row batch."""
    if not 0 <= label < num_output:
        raise ValueError(f"Label {label} is out of range for {num_output} outputs")
    vector = torch.zeros(1, num_output, dtype=dtype)
    vector[0, label] = 1.0
    return vector


def build_layers(config: NetworkConfig, dtype: torch.dtype = torch.float32) -> List[LayerBase]:
    """
    Create the layers described by a network configuration.

    Each layer's input shape is the output shape of the previous one.

    Raises:
        ValueError: If any layer configuration is invalid
    """
    layers = []
    shape = config.input_dims
    for index, layer_config in enumerate(config.layers):
        layer = create_layer(index, layer_config, shape, dtype=dtype)
        layers.append(layer)
        shape = layer.output_shape
    return layers


def initial_parameters(config: NetworkConfig, dtype: torch.dtype = torch.float32) -> List[LayerParameter]:
    """Initial parameter array of a network, derived from the layer seeds."""
    return [
        layer.parameter.clone() if layer.is_learnable() else LayerParameter.empty(dtype)
        for layer in build_layers(config, dtype=dtype)
    ]


class NeuralNetwork:
    """
    Ordered sequence of layers trained sample by sample.

    Every call to ``train`` pushes one gradient array to the parameter store.
    After ``batch_size`` pushes the network pulls fresh parameters from the
    store and replaces the parameters of its learnable layers.
    """

    def __init__(self, layers: List[LayerBase], batch_size: int = 1, parameter_store=None):
        """
        Initialize network.

        Args:
            layers: Layers in computation order
            batch_size: Number of pushes between two pulls
            parameter_store: Object providing ``push(gradients)`` and ``pull()``

        Raises:
            ValueError: If the layers are not correctly indexed or ordered
        """
        if not layers:
            raise ValueError("A network needs at least one layer")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        for position, layer in enumerate(layers):
            if layer.index != position:
                raise ValueError(f"Layer at position {position} has index {layer.index}")
            if isinstance(layer, ActivationWithLossLayer) and position != len(layers) - 1:
                raise ValueError(f"Loss layer {position} must be the last layer")
        if layers[-1].is_learnable():
            raise ValueError("The output layer must not be learnable")

        self.layers = list(layers)
        self.batch_size = batch_size
        self.parameter_store = parameter_store
        self._trained_count = 0

    @classmethod
    def from_config(
        cls,
        config: NetworkConfig,
        parameter_store=None,
        dtype: torch.dtype = torch.float32
    ) -> 'NeuralNetwork':
        return cls(build_layers(config, dtype=dtype), config.batch_size, parameter_store)

    @property
    def num_layers(self) -> int:
        return len(self.layers)

    @property
    def trained_count(self) -> int:
        return self._trained_count

    def get_parameters(self) -> List[LayerParameter]:
        """Current parameter array, with the empty parameter for non-learnable layers."""
        return [
            layer.parameter if layer.is_learnable() else LayerParameter.empty()
            for layer in self.layers
        ]

    def set_parameters(self, parameters: List[LayerParameter]):
        """
        Replace the parameters of every learnable layer.

        Raises:
            RuntimeError: If the array length differs from the layer count
        """
        if len(parameters) != len(self.layers):
            raise RuntimeError(
                f"The number of layer parameters ({len(parameters)}) is not equal to "
                f"the number of layers ({len(self.layers)})"
            )
        for layer, parameter in zip(self.layers, parameters):
            if layer.is_learnable():
                layer.parameter = parameter

    def adopt_parameters(self, parameters: List[LayerParameter]):
        """Take over pulled parameters and start a new batch."""
        self.set_parameters(clone_parameters(parameters))
        self._trained_count = 0

    def train(self, input: torch.Tensor, label: Union[int, torch.Tensor]):
        """
        Run one training step on a sample and push its gradients.

        Args:
            input: Input row (or batch of rows)
            label: Class index or expected output vector
        """
        if self.parameter_store is None:
            raise RuntimeError("Cannot train a network without a parameter store")

        if input.dim() == 1:
            input = input.unsqueeze(0)
        if isinstance(label, int):
            label = create_output_vector(label, self.layers[-1].num_output, dtype=input.dtype)
        elif label.dim() == 1:
            label = label.unsqueeze(0)

        activations = [input] + self.feed_forward(input)
        errors = self.back_propagate(activations, label)
        if errors:
            gradients = self.generate_parameter_gradients(activations, errors)
        else:
            gradients = []

        self.parameter_store.push(gradients)
        self._trained_count += 1

        if self._trained_count >= self.batch_size:
            self.adopt_parameters(self.parameter_store.pull())

    def feed_forward(self, input: torch.Tensor, begin: int = 0, end: Optional[int] = None) -> List[torch.Tensor]:
        """
        Compute the activations of layers ``begin`` through ``end``.

        Args:
            input: Input of layer ``begin``
            begin: Index of the first layer
            end: Index of the last layer (defaults to the output layer)

        Returns:
            One activation per layer in the range
        """
        if end is None:
            end = len(self.layers) - 1
        if begin > end:
            raise ValueError(
                f"The beginning index ({begin}) must be less than or equal to the ending index ({end})."
            )
        self._check_indices(begin, end, forward=True)

        activations = []
        activation = input
        for i in range(begin, end + 1):
            activation = self.layers[i].feed_forward(activation)
            activations.append(activation)
        return activations

    def back_propagate(self, activations: List[torch.Tensor], label: torch.Tensor) -> List[torch.Tensor]:
        """
        Compute the errors needed to generate gradients for every layer.

        The error returned by layer 0 is never needed: the error used to
        update layer 0 comes out of layer 1's backward call.
        """
        return self.back_propagate_to(1, activations, label)

    def back_propagate_to(self, end: int, activations: List[torch.Tensor], label: torch.Tensor) -> List[torch.Tensor]:
        if len(self.layers) < 2:
            return []

        last = len(self.layers) - 1
        error = self.layers[last].back_propagate_from_label(activations[last + 1], label)
        if end == last:
            return [error]
        return self.back_propagate_from_to(last - 1, end, activations, error) + [error]

    def back_propagate_from_to(
        self,
        begin: int,
        end: int,
        activations: List[torch.Tensor],
        next_error: torch.Tensor
    ) -> List[torch.Tensor]:
        """
        Propagate an error backwards from layer ``begin`` down to layer ``end``.

        Returns:
            Errors ordered from layer ``end`` to layer ``begin``
        """
        if begin == len(self.layers) - 1:
            raise ValueError("The beginning layer of back_propagate_from_to cannot be the output layer")
        if end == 0:
            raise ValueError(
                "The ending layer cannot be the first layer: the error propagated to the input "
                "is not needed to generate gradients for the first layer"
            )
        if begin < end:
            raise ValueError(
                f"The beginning index ({begin}) must be greater than or equal to the ending index ({end})."
            )
        self._check_indices(begin, end, forward=False)

        errors: List[Optional[torch.Tensor]] = [None] * (begin - end + 1)
        error = next_error
        for i in range(begin, end - 1, -1):
            error = self.layers[i].back_propagate(activations[i], activations[i + 1], error)
            errors[i - end] = error
        return errors

    def generate_parameter_gradients(
        self,
        activations: List[torch.Tensor],
        errors: List[torch.Tensor],
        begin: int = 0,
        end: Optional[int] = None
    ) -> List[LayerParameter]:
        """Gradient array for layers ``begin`` through ``end``."""
        if end is None:
            end = len(self.layers) - 1
        if begin > end:
            raise ValueError(
                f"The beginning index ({begin}) must be less than or equal to the ending index ({end})."
            )
        self._check_indices(begin, end, forward=True)

        gradients = []
        for i in range(begin, end + 1):
            layer = self.layers[i]
            if layer.is_learnable():
                gradients.append(layer.generate_parameter_gradient(activations[i], errors[i]))
            else:
                gradients.append(LayerParameter.empty(activations[i].dtype))
        return gradients

    def _check_indices(self, begin: int, end: int, forward: bool):
        if forward:
            if begin < 0:
                raise ValueError(f"The beginning index ({begin}) must be greater than or equal to 0.")
            if end >= len(self.layers):
                raise ValueError(
                    f"The ending index ({end}) must be less than the length of layers ({len(self.layers)})."
                )
        else:
            if end < 0:
                raise ValueError(f"The ending index ({end}) must be greater than or equal to 0.")
            if begin >= len(self.layers):
                raise ValueError(
                    f"The beginning index ({begin}) must be less than the length of layers ({len(self.layers)})."
                )
