"""
Network configuration.

The launcher resolves these records once and passes them by value into every
worker and aggregator, so they are frozen.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, Tuple
import json
import logging

logger = logging.getLogger(__name__)


SHAPE_DELIMITER = ","

LAYER_TYPES = (
    "FullyConnected",
    "Activation",
    "ActivationWithLoss",
    "Convolutional",
    "Pooling",
)


def shape_from_string(shape: str) -> Tuple[int, ...]:
    """
    Parse a comma separated shape such as ``"28,28"``.

    Raises:
        ValueError: If the string is empty or holds a non-positive dimension
    """
    parts = [part.strip() for part in shape.split(SHAPE_DELIMITER) if part.strip()]
    if not parts:
        raise ValueError(f"Invalid shape string: '{shape}'")
    dims = tuple(int(part) for part in parts)
    get_shape_length(dims)
    return dims


def shape_to_string(shape: Tuple[int, ...]) -> str:
    return SHAPE_DELIMITER.join(str(dim) for dim in shape)


def get_shape_length(shape: Tuple[int, ...]) -> int:
    """Number of elements described by a shape."""
    length = 1
    for dim in shape:
        if dim <= 0:
            raise ValueError(f"Shape dimensions must be positive: {shape}")
        length *= dim
    return length


@dataclass(frozen=True)
class LayerConfig:
    """
    Configuration of one layer.

    Only the fields relevant to ``type`` are read; the rest keep their
    defaults.
    """

    type: str

    # FullyConnected
    num_output: Optional[int] = None
    init_weight: float = 1e-2
    init_bias: float = 0.0
    random_seed: int = 0

    # Activation / ActivationWithLoss
    activation_function: Optional[str] = None
    loss_function: Optional[str] = None

    # Convolutional / Pooling
    pooling_type: Optional[str] = None
    kernel_height: int = 1
    kernel_width: int = 1
    stride_height: int = 1
    stride_width: int = 1
    padding_height: int = 0
    padding_width: int = 0

    def __post_init__(self):
        if self.type not in LAYER_TYPES:
            raise ValueError(f"Unknown layer type: {self.type}. Expected one of {list(LAYER_TYPES)}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LayerConfig':
        return cls(**data)


@dataclass(frozen=True)
class NetworkConfig:
    """
    Global training configuration shared by workers and the aggregator.
    """

    input_shape: str
    layers: Tuple[LayerConfig, ...] = field(default_factory=tuple)
    stepsize: float = 1e-2
    batch_size: int = 1
    max_iterations: int = 1

    def __post_init__(self):
        # Accept lists from callers, but store an immutable tuple
        object.__setattr__(self, "layers", tuple(self.layers))

        if not self.layers:
            raise ValueError("A network needs at least one layer")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be non-negative, got {self.max_iterations}")
        if self.stepsize <= 0:
            raise ValueError(f"stepsize must be positive, got {self.stepsize}")
        shape_from_string(self.input_shape)

    @property
    def input_dims(self) -> Tuple[int, ...]:
        return shape_from_string(self.input_shape)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["layers"] = [layer.to_dict() for layer in self.layers]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NetworkConfig':
        """Create from dictionary."""
        data = dict(data)
        data["layers"] = tuple(
            layer if isinstance(layer, LayerConfig) else LayerConfig.from_dict(layer)
            for layer in data.get("layers", ())
        )
        return cls(**data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> 'NetworkConfig':
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def from_json_file(cls, path: str) -> 'NetworkConfig':
        """Load from JSON file."""
        with open(path, 'r') as f:
            config = cls.from_dict(json.load(f))
        logger.info(f"Loaded network config from {path}: {len(config.layers)} layers")
        return config

    def to_json_file(self, path: str):
        """Save to JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
