"""
Unit tests for layers and activation functions.
"""

import pytest
import torch

from core.activations import get_activation_function
from core.config import LayerConfig
from core.layer_parameter import LayerParameter
from core.layers import (
    ActivationLayer,
    ActivationWithLossLayer,
    ConvolutionalLayer,
    FullyConnectedLayer,
    PoolingLayer,
    create_layer,
)


class TestActivationLayer:
    """Test elementwise activation layers."""

    def test_sigmoid(self):
        """Test sigmoid forward and backward against known values."""
        layer = ActivationLayer(0, (4,), "sigmoid")
        input = torch.tensor([[-1.0, -0.5, 0.5, 1.0], [-0.6, -0.3, 0.3, 0.6]], dtype=torch.float64)
        expected_activation = torch.tensor([
            [2.689414214e-01, 3.775406688e-01, 6.224593312e-01, 7.310585786e-01],
            [3.543436938e-01, 4.255574832e-01, 5.744425168e-01, 6.456563062e-01],
        ], dtype=torch.float64)
        next_error = torch.tensor([[0.1, 0.5, -0.2, 0.3], [0.18, -0.23, 0.195, -0.076]], dtype=torch.float64)
        expected_error = torch.tensor([
            [1.96611933241e-02, 1.17501856101e-01, -4.70007424403e-02, 5.89835799724e-02],
            [4.11811632822e-02, -5.62254116889e-02, 4.76693707797e-02, -1.73876022747e-02],
        ], dtype=torch.float64)

        activation = layer.feed_forward(input)
        assert torch.allclose(activation, expected_activation, rtol=0.0, atol=1e-6)

        error = layer.back_propagate(input, activation, next_error)
        assert torch.allclose(error, expected_error, rtol=0.0, atol=1e-6)

    def test_relu_derivative(self):
        """Test that relu only passes errors for positive inputs."""
        layer = ActivationLayer(0, (3,), "relu")
        input = torch.tensor([[-1.0, 0.0, 2.0]])
        activation = layer.feed_forward(input)

        assert torch.equal(activation, torch.tensor([[0.0, 0.0, 2.0]]))
        error = layer.back_propagate(input, activation, torch.ones(1, 3))
        assert torch.equal(error, torch.tensor([[0.0, 0.0, 1.0]]))

    def test_softmax_requires_loss_layer(self):
        """Test that softmax cannot be used without a loss."""
        with pytest.raises(ValueError):
            ActivationLayer(0, (3,), "softmax")

    def test_unknown_activation(self):
        """Test that unknown activation names are rejected."""
        with pytest.raises(ValueError):
            get_activation_function("swish")

    def test_activation_names_are_case_insensitive(self):
        """Test lookup of activation functions."""
        assert get_activation_function("Sigmoid").name == "sigmoid"
        assert get_activation_function("linear").name == "identity"

    def test_not_learnable(self):
        """Test that activation layers have no parameters."""
        layer = ActivationLayer(2, (3,), "tanh")
        assert not layer.is_learnable()
        with pytest.raises(RuntimeError, match="Layer 2 is not a learnable layer"):
            layer.parameter
        with pytest.raises(RuntimeError):
            layer.parameter = LayerParameter.empty()
        with pytest.raises(RuntimeError):
            layer.generate_parameter_gradient(torch.zeros(1, 3), torch.zeros(1, 3))


class TestActivationWithLossLayer:
    """Test the output layer."""

    def test_error_from_label(self):
        """Test that the initial error is activation minus label."""
        layer = ActivationWithLossLayer(1, (3,), "softmax", "crossentropy")
        activation = layer.feed_forward(torch.tensor([[1.0, 2.0, 3.0]]))
        label = torch.tensor([[0.0, 1.0, 0.0]])

        assert torch.allclose(activation.sum(dim=1), torch.ones(1))
        assert torch.allclose(layer.back_propagate_from_label(activation, label), activation - label)

    def test_back_propagate_not_allowed(self):
        """Test that the loss layer only starts backward passes."""
        layer = ActivationWithLossLayer(1, (3,), "sigmoid", "crossentropy")
        with pytest.raises(RuntimeError):
            layer.back_propagate(torch.zeros(1, 3), torch.zeros(1, 3), torch.zeros(1, 3))

    def test_unsupported_loss(self):
        """Test that only cross entropy is accepted."""
        with pytest.raises(ValueError):
            ActivationWithLossLayer(1, (3,), "sigmoid", "hinge")
        with pytest.raises(ValueError):
            ActivationWithLossLayer(1, (3,), "sigmoid", None)


class TestFullyConnectedLayer:
    """Test the affine layer."""

    @pytest.fixture
    def layer(self):
        layer = FullyConnectedLayer(0, (3,), 2)
        layer.parameter = LayerParameter(
            weight=torch.tensor([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]),
            bias=torch.tensor([0.5, -0.5])
        )
        return layer

    def test_feed_forward(self, layer):
        """Test input @ weight + bias."""
        output = layer.feed_forward(torch.tensor([[1.0, 0.0, -1.0]]))
        assert torch.allclose(output, torch.tensor([[-3.5, -4.5]]))

    def test_back_propagate(self, layer):
        """Test that the error is multiplied by the transposed weight."""
        input = torch.tensor([[1.0, 0.0, -1.0]])
        error = layer.back_propagate(input, layer.feed_forward(input), torch.tensor([[1.0, 2.0]]))
        assert torch.allclose(error, torch.tensor([[5.0, 11.0, 17.0]]))

    def test_generate_parameter_gradient(self, layer):
        """Test outer product gradient and row-summed bias gradient."""
        gradient = layer.generate_parameter_gradient(
            torch.tensor([[1.0, 0.0, -1.0], [0.0, 1.0, 0.0]]),
            torch.tensor([[1.0, 2.0], [3.0, 4.0]])
        )
        assert torch.allclose(gradient.weight, torch.tensor([[1.0, 2.0], [3.0, 4.0], [-1.0, -2.0]]))
        assert torch.allclose(gradient.bias, torch.tensor([4.0, 6.0]))

    def test_seeded_initialization(self):
        """Test that the random seed determines the initial weights."""
        first = FullyConnectedLayer(0, (4,), 3, init_weight=0.1, init_bias=0.2, random_seed=7)
        second = FullyConnectedLayer(0, (4,), 3, init_weight=0.1, init_bias=0.2, random_seed=7)
        other = FullyConnectedLayer(0, (4,), 3, init_weight=0.1, init_bias=0.2, random_seed=8)

        assert first.parameter.weight.shape == (4, 3)
        assert torch.equal(first.parameter.weight, second.parameter.weight)
        assert not torch.equal(first.parameter.weight, other.parameter.weight)
        assert torch.all(first.parameter.bias == 0.2)

    def test_flattens_multidimensional_input(self):
        """Test that a 2D input shape is treated as one flat vector."""
        layer = FullyConnectedLayer(0, (2, 3), 4)
        assert layer.num_input == 6
        assert layer.feed_forward(torch.ones(1, 2, 3)).shape == (1, 4)

    def test_invalid_num_output(self):
        """Test that the output size must be positive."""
        with pytest.raises(ValueError):
            FullyConnectedLayer(0, (3,), 0)


class TestConvolutionalLayer:
    """Test convolution shape computation."""

    def test_output_shape(self):
        """Test output size without padding."""
        layer = ConvolutionalLayer(0, (6, 6), 3, 3)
        assert layer.output_shape == (4, 4)
        assert layer.parameter.weight.shape == (3, 3)
        assert layer.parameter.bias.shape == (16,)

    def test_output_shape_with_stride_and_padding(self):
        """Test that partial windows are counted."""
        layer = ConvolutionalLayer(0, (5, 5), 3, 3, stride_height=2, stride_width=2,
                                   padding_height=1, padding_width=1)
        assert layer.output_shape == (3, 3)

    def test_requires_two_dimensional_input(self):
        """Test that flat inputs are rejected."""
        with pytest.raises(ValueError, match="Unsupported input dimensions"):
            ConvolutionalLayer(0, (36,), 3, 3)

    def test_computation_not_supported(self):
        """Test that the numeric operations are unavailable."""
        layer = ConvolutionalLayer(0, (6, 6), 3, 3)
        with pytest.raises(NotImplementedError):
            layer.feed_forward(torch.zeros(1, 6, 6))


class TestPoolingLayer:
    """Test pooling shape validation."""

    def test_output_shape(self):
        """Test output size of non-overlapping windows."""
        layer = PoolingLayer(0, (5, 5), "max", 2, 2, stride_height=2, stride_width=2)
        assert layer.output_shape == (3, 3)
        assert not layer.is_learnable()

    def test_last_window_is_clipped(self):
        """Test that a window starting in the padding is dropped."""
        layer = PoolingLayer(0, (4, 4), "average", 3, 3, stride_height=3, stride_width=3,
                             padding_height=2, padding_width=2)
        assert layer.output_shape == (2, 2)

    def test_illegal_pooling_type(self):
        """Test that only max and average pooling exist."""
        with pytest.raises(ValueError, match="Illegal pooling type"):
            PoolingLayer(0, (4, 4), "median", 2, 2)

    def test_padding_must_be_smaller_than_kernel(self):
        """Test padding validation."""
        with pytest.raises(ValueError, match="Padding height"):
            PoolingLayer(0, (4, 4), "max", 2, 2, padding_height=2)
        with pytest.raises(ValueError, match="Padding width"):
            PoolingLayer(0, (4, 4), "max", 2, 2, padding_width=3)


class TestCreateLayer:
    """Test the layer factory."""

    def test_creates_every_type(self):
        """Test that each config type maps to its layer class."""
        assert isinstance(
            create_layer(0, LayerConfig(type="FullyConnected", num_output=4), (3,)), FullyConnectedLayer
        )
        assert isinstance(
            create_layer(1, LayerConfig(type="Activation", activation_function="tanh"), (4,)), ActivationLayer
        )
        assert isinstance(
            create_layer(2, LayerConfig(type="ActivationWithLoss", activation_function="softmax",
                                        loss_function="crossentropy"), (4,)),
            ActivationWithLossLayer
        )
        assert isinstance(
            create_layer(0, LayerConfig(type="Convolutional", kernel_height=2, kernel_width=2), (4, 4)),
            ConvolutionalLayer
        )
        assert isinstance(
            create_layer(1, LayerConfig(type="Pooling", pooling_type="max", kernel_height=2, kernel_width=2),
                         (3, 3)),
            PoolingLayer
        )

    def test_dtype(self):
        """Test that parameters are created with the requested dtype."""
        layer = create_layer(0, LayerConfig(type="FullyConnected", num_output=2), (3,), dtype=torch.float64)
        assert layer.parameter.weight.dtype == torch.float64

    def test_unknown_type(self):
        """Test that unknown layer types are rejected by the config."""
        with pytest.raises(ValueError):
            LayerConfig(type="Recurrent")
