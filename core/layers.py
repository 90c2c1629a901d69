"""
Layers of the feed-forward computation graph.

Tensors follow the row-vector convention: a batch is a matrix whose rows are
samples, so a fully-connected layer computes ``input @ weight + bias`` with a
weight of shape ``(num_input, num_output)``.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import torch

from core.activations import get_activation_function
from core.config import LayerConfig, get_shape_length
from core.layer_parameter import LayerParameter

logger = logging.getLogger(__name__)


POOLING_TYPES = ("max", "average")
LOSS_FUNCTIONS = ("crossentropy",)


def _as_batch(tensor: torch.Tensor) -> torch.Tensor:
    """Flatten every sample of a batch into one row."""
    if tensor.dim() == 1:
        return tensor.unsqueeze(0)
    return tensor.reshape(tensor.shape[0], -1)


class LayerBase(ABC):
    """
    Common state of all layers.

    Subclasses provide the forward and backward computations. Learnable
    layers additionally hold a LayerParameter and produce gradients for it.
    """

    def __init__(self, index: int, input_shape: Tuple[int, ...], output_shape: Tuple[int, ...]):
        self.index = index
        self.input_shape = tuple(input_shape)
        self.output_shape = tuple(output_shape)
        self._parameter: Optional[LayerParameter] = None

    @property
    def num_output(self) -> int:
        return get_shape_length(self.output_shape)

    @property
    def num_input(self) -> int:
        return get_shape_length(self.input_shape)

    @abstractmethod
    def is_learnable(self) -> bool:
        ...

    @property
    def parameter(self) -> LayerParameter:
        if not self.is_learnable():
            raise RuntimeError(f"Layer {self.index} is not a learnable layer")
        return self._parameter

    @parameter.setter
    def parameter(self, parameter: LayerParameter):
        if not self.is_learnable():
            raise RuntimeError(f"Layer {self.index} is not a learnable layer")
        self._parameter = parameter

    @abstractmethod
    def feed_forward(self, input: torch.Tensor) -> torch.Tensor:
        """Compute the activation of this layer for a batch of inputs."""

    @abstractmethod
    def back_propagate(
        self,
        input: torch.Tensor,
        activation: torch.Tensor,
        next_error: torch.Tensor
    ) -> torch.Tensor:
        """
        Compute the error with respect to this layer's input.

        Args:
            input: Input of this layer during the forward pass
            activation: Output of this layer during the forward pass
            next_error: Error produced by the layer after this one

        Returns:
            Error passed on to the layer before this one
        """

    def back_propagate_from_label(self, activation: torch.Tensor, label: torch.Tensor) -> torch.Tensor:
        """Initial error of the output layer."""
        return activation - label.to(activation.dtype)

    def generate_parameter_gradient(self, input: torch.Tensor, error: torch.Tensor) -> LayerParameter:
        raise RuntimeError(f"Layer {self.index} is not a learnable layer")

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(index={self.index}, input_shape={self.input_shape}, "
            f"output_shape={self.output_shape})"
        )


class ActivationLayer(LayerBase):
    """Applies an elementwise activation function."""

    def __init__(self, index: int, input_shape: Tuple[int, ...], activation_function: str):
        super().__init__(index, input_shape, input_shape)
        self.activation_function = get_activation_function(activation_function)
        if not self.activation_function.differentiable:
            raise ValueError(
                f"Activation function '{activation_function}' can only be used with a loss layer"
            )

    def is_learnable(self) -> bool:
        return False

    def feed_forward(self, input: torch.Tensor) -> torch.Tensor:
        return self.activation_function.forward(input)

    def back_propagate(self, input, activation, next_error):
        return next_error * self.activation_function.derivative(input, activation)


class ActivationWithLossLayer(LayerBase):
    """
    Output layer combining an activation function with a loss.

    For sigmoid or softmax paired with cross entropy the error with respect
    to the layer input reduces to ``activation - label``.
    """

    def __init__(
        self,
        index: int,
        input_shape: Tuple[int, ...],
        activation_function: str,
        loss_function: str
    ):
        super().__init__(index, input_shape, input_shape)
        self.activation_function = get_activation_function(activation_function)
        if loss_function is None or loss_function.lower() not in LOSS_FUNCTIONS:
            raise ValueError(f"Unsupported loss function: {loss_function}")
        self.loss_function = loss_function.lower()

    def is_learnable(self) -> bool:
        return False

    def feed_forward(self, input: torch.Tensor) -> torch.Tensor:
        return self.activation_function.forward(input)

    def back_propagate(self, input, activation, next_error):
        raise RuntimeError(f"Layer {self.index} computes a loss and must be the output layer")


class FullyConnectedLayer(LayerBase):
    """Affine layer ``input @ weight + bias``."""

    def __init__(
        self,
        index: int,
        input_shape: Tuple[int, ...],
        num_output: int,
        init_weight: float = 1e-2,
        init_bias: float = 0.0,
        random_seed: int = 0,
        dtype: torch.dtype = torch.float32
    ):
        if num_output is None or num_output <= 0:
            raise ValueError(f"Layer {index}: num_output must be positive, got {num_output}")
        super().__init__(index, input_shape, (num_output,))

        generator = torch.Generator().manual_seed(random_seed)
        weight = torch.randn(self.num_input, num_output, generator=generator, dtype=dtype) * init_weight
        bias = torch.full((num_output,), init_bias, dtype=dtype)
        self._parameter = LayerParameter(weight=weight, bias=bias)

    def is_learnable(self) -> bool:
        return True

    def feed_forward(self, input: torch.Tensor) -> torch.Tensor:
        return _as_batch(input) @ self._parameter.weight + self._parameter.bias

    def back_propagate(self, input, activation, next_error):
        error = _as_batch(next_error) @ self._parameter.weight.t()
        if input.dim() > 2:
            error = error.reshape(input.shape)
        return error

    def generate_parameter_gradient(self, input: torch.Tensor, error: torch.Tensor) -> LayerParameter:
        input = _as_batch(input)
        error = _as_batch(error)
        return LayerParameter(weight=input.t() @ error, bias=error.sum(dim=0))


def _window_count(size: int, kernel: int, padding: int, stride: int) -> int:
    if stride <= 0:
        raise ValueError(f"Stride must be positive, got {stride}")
    return int(math.ceil((size - kernel + 2 * padding) / stride)) + 1


class ConvolutionalLayer(LayerBase):
    """
    Two-dimensional convolution.

    Only construction, shape computation and parameter initialization are
    provided.
    """

    def __init__(
        self,
        index: int,
        input_shape: Tuple[int, ...],
        kernel_height: int,
        kernel_width: int,
        stride_height: int = 1,
        stride_width: int = 1,
        padding_height: int = 0,
        padding_width: int = 0,
        init_weight: float = 1e-2,
        init_bias: float = 0.0,
        random_seed: int = 0,
        dtype: torch.dtype = torch.float32
    ):
        if len(input_shape) != 2:
            raise ValueError(f"Unsupported input dimensions: {len(input_shape)}")
        output_shape = (
            _window_count(input_shape[0], kernel_height, padding_height, stride_height),
            _window_count(input_shape[1], kernel_width, padding_width, stride_width),
        )
        if min(output_shape) <= 0:
            raise ValueError(f"Kernel {kernel_height}x{kernel_width} does not fit input shape {input_shape}")
        super().__init__(index, input_shape, output_shape)
        self.kernel = (kernel_height, kernel_width)
        self.stride = (stride_height, stride_width)
        self.padding = (padding_height, padding_width)

        generator = torch.Generator().manual_seed(random_seed)
        weight = torch.randn(kernel_height, kernel_width, generator=generator, dtype=dtype) * init_weight
        bias = torch.full((self.num_output,), init_bias, dtype=dtype)
        self._parameter = LayerParameter(weight=weight, bias=bias)

    def is_learnable(self) -> bool:
        return True

    def feed_forward(self, input):
        raise NotImplementedError("Convolutional layer computation is not supported")

    def back_propagate(self, input, activation, next_error):
        raise NotImplementedError("Convolutional layer computation is not supported")

    def generate_parameter_gradient(self, input, error):
        raise NotImplementedError("Convolutional layer computation is not supported")


class PoolingLayer(LayerBase):
    """
    Two-dimensional max or average pooling.

    Only construction and shape validation are provided.
    """

    def __init__(
        self,
        index: int,
        input_shape: Tuple[int, ...],
        pooling_type: str,
        kernel_height: int,
        kernel_width: int,
        stride_height: int = 1,
        stride_width: int = 1,
        padding_height: int = 0,
        padding_width: int = 0
    ):
        if pooling_type is None or pooling_type.lower() not in POOLING_TYPES:
            raise ValueError(f"Illegal pooling type: {pooling_type}")
        if len(input_shape) != 2:
            raise ValueError(f"Unsupported input dimensions: {len(input_shape)}")
        if padding_height >= kernel_height:
            raise ValueError("Padding height should be less than kernel height.")
        if padding_width >= kernel_width:
            raise ValueError("Padding width should be less than kernel width.")

        output_shape = (
            self._clip(_window_count(input_shape[0], kernel_height, padding_height, stride_height),
                       input_shape[0], padding_height, stride_height),
            self._clip(_window_count(input_shape[1], kernel_width, padding_width, stride_width),
                       input_shape[1], padding_width, stride_width),
        )
        if min(output_shape) <= 0:
            raise ValueError(f"Kernel {kernel_height}x{kernel_width} does not fit input shape {input_shape}")
        super().__init__(index, input_shape, output_shape)
        self.pooling_type = pooling_type.lower()
        self.kernel = (kernel_height, kernel_width)
        self.stride = (stride_height, stride_width)
        self.padding = (padding_height, padding_width)

    @staticmethod
    def _clip(count: int, size: int, padding: int, stride: int) -> int:
        # The last window has to start inside the (padded) input.
        if (count - 1) * stride >= size + padding:
            count -= 1
            if (count - 1) * stride >= size + padding:
                raise ValueError(
                    "The second last pooling still starts outside of the image even though we clip the last."
                )
        return count

    def is_learnable(self) -> bool:
        return False

    def feed_forward(self, input):
        raise NotImplementedError("Pooling layer computation is not supported")

    def back_propagate(self, input, activation, next_error):
        raise NotImplementedError("Pooling layer computation is not supported")


def create_layer(
    index: int,
    config: LayerConfig,
    input_shape: Tuple[int, ...],
    dtype: torch.dtype = torch.float32
) -> LayerBase:
    """
    Build a layer from its configuration.

    Args:
        index: Position of the layer in the network
        config: Layer configuration
        input_shape: Output shape of the previous layer
        dtype: Dtype of the initial parameters

    Returns:
        The constructed layer

    Raises:
        ValueError: If the configuration is invalid for the input shape
    """
    if config.type == "FullyConnected":
        return FullyConnectedLayer(
            index, input_shape, config.num_output,
            init_weight=config.init_weight,
            init_bias=config.init_bias,
            random_seed=config.random_seed,
            dtype=dtype
        )
    if config.type == "Activation":
        return ActivationLayer(index, input_shape, config.activation_function)
    if config.type == "ActivationWithLoss":
        return ActivationWithLossLayer(
            index, input_shape, config.activation_function, config.loss_function
        )
    if config.type == "Convolutional":
        return ConvolutionalLayer(
            index, input_shape,
            config.kernel_height, config.kernel_width,
            stride_height=config.stride_height,
            stride_width=config.stride_width,
            padding_height=config.padding_height,
            padding_width=config.padding_width,
            init_weight=config.init_weight,
            init_bias=config.init_bias,
            random_seed=config.random_seed,
            dtype=dtype
        )
    if config.type == "Pooling":
        return PoolingLayer(
            index, input_shape, config.pooling_type,
            config.kernel_height, config.kernel_width,
            stride_height=config.stride_height,
            stride_width=config.stride_width,
            padding_height=config.padding_height,
            padding_width=config.padding_width
        )
    raise ValueError(f"Unknown layer type: {config.type}")
