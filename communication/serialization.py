"""
Binary encoding of tensors and parameter arrays for transmission.

All integers and floats are big-endian:

- Tensor2D: ``int32 rows, int32 cols, rows*cols x float32`` (row-major)
- LayerParameter array: ``int32 count`` then ``weight, bias`` Tensor2D pairs
- Validation stats pair: ``int32 total, int32 correct`` for training then
  cross validation
- Gradient contribution: ``int32 count`` then a LayerParameter array
- Gradient batch list: ``int32 num_batches`` then LayerParameter arrays

Bias vectors travel as one-row tensors and come back one-dimensional.
"""

import io
import struct
from typing import List, Tuple

import numpy as np
import torch

from core.layer_parameter import LayerParameter
from core.validator import ValidationStats


WIRE_DTYPE = np.dtype('>f4')
_INT = struct.Struct('>i')


def _write_int(buffer: io.BytesIO, value: int):
    buffer.write(_INT.pack(value))


def _read_exact(buffer: io.BytesIO, size: int) -> bytes:
    data = buffer.read(size)
    if len(data) != size:
        raise ValueError(f"Truncated payload: expected {size} bytes, got {len(data)}")
    return data


def _read_int(buffer: io.BytesIO) -> int:
    return _INT.unpack(_read_exact(buffer, _INT.size))[0]


def write_tensor(buffer: io.BytesIO, tensor: torch.Tensor):
    """Write a tensor as Tensor2D; 1-D tensors become a single row."""
    if tensor.dim() == 1:
        tensor = tensor.unsqueeze(0) if tensor.numel() > 0 else tensor.reshape(0, 0)
    elif tensor.dim() != 2:
        tensor = tensor.reshape(tensor.shape[0], -1)

    rows, cols = tensor.shape
    _write_int(buffer, rows)
    _write_int(buffer, cols)
    buffer.write(tensor.detach().cpu().contiguous().numpy().astype(WIRE_DTYPE).tobytes())


def read_tensor(buffer: io.BytesIO) -> torch.Tensor:
    rows = _read_int(buffer)
    cols = _read_int(buffer)
    if rows < 0 or cols < 0:
        raise ValueError(f"Invalid tensor shape: ({rows}, {cols})")
    data = _read_exact(buffer, rows * cols * WIRE_DTYPE.itemsize)
    array = np.frombuffer(data, dtype=WIRE_DTYPE).astype(np.float32).reshape(rows, cols)
    return torch.from_numpy(array.copy())


def _write_parameters(buffer: io.BytesIO, parameters: List[LayerParameter]):
    _write_int(buffer, len(parameters))
    for parameter in parameters:
        write_tensor(buffer, parameter.weight)
        write_tensor(buffer, parameter.bias)


def _read_parameters(buffer: io.BytesIO) -> List[LayerParameter]:
    count = _read_int(buffer)
    if count < 0:
        raise ValueError(f"Invalid parameter count: {count}")
    parameters = []
    for _ in range(count):
        weight = read_tensor(buffer)
        bias = read_tensor(buffer).reshape(-1)
        parameters.append(LayerParameter(weight=weight, bias=bias))
    return parameters


def _expect_end(buffer: io.BytesIO):
    if buffer.read(1):
        raise ValueError("Trailing bytes after payload")


def encode_tensor(tensor: torch.Tensor) -> bytes:
    buffer = io.BytesIO()
    write_tensor(buffer, tensor)
    return buffer.getvalue()


def decode_tensor(data: bytes) -> torch.Tensor:
    buffer = io.BytesIO(data)
    tensor = read_tensor(buffer)
    _expect_end(buffer)
    return tensor


def encode_layer_parameters(parameters: List[LayerParameter]) -> bytes:
    """
    Encode a parameter array.

    Args:
        parameters: One LayerParameter per layer; an empty list is the
            end-of-iteration sentinel

    Returns:
        Encoded bytes
    """
    buffer = io.BytesIO()
    _write_parameters(buffer, parameters)
    return buffer.getvalue()


def decode_layer_parameters(data: bytes) -> List[LayerParameter]:
    buffer = io.BytesIO(data)
    parameters = _read_parameters(buffer)
    _expect_end(buffer)
    return parameters


def encode_validation_stats_pair(training: ValidationStats, cross_validation: ValidationStats) -> bytes:
    return struct.pack(
        '>iiii',
        training.total_num, training.correct_num,
        cross_validation.total_num, cross_validation.correct_num
    )


def decode_validation_stats_pair(data: bytes) -> Tuple[ValidationStats, ValidationStats]:
    if len(data) != 16:
        raise ValueError(f"Validation stats pair must be 16 bytes, got {len(data)}")
    total_a, correct_a, total_b, correct_b = struct.unpack('>iiii', data)
    return ValidationStats(total_a, correct_a), ValidationStats(total_b, correct_b)


def encode_gradient_contribution(count: int, gradient_sum: List[LayerParameter]) -> bytes:
    """Encode a worker's summed gradients with the number of samples folded in."""
    buffer = io.BytesIO()
    _write_int(buffer, count)
    _write_parameters(buffer, gradient_sum)
    return buffer.getvalue()


def decode_gradient_contribution(data: bytes) -> Tuple[int, List[LayerParameter]]:
    buffer = io.BytesIO(data)
    count = _read_int(buffer)
    parameters = _read_parameters(buffer)
    _expect_end(buffer)
    return count, parameters


def encode_gradient_batch(batch: List[List[LayerParameter]]) -> bytes:
    buffer = io.BytesIO()
    _write_int(buffer, len(batch))
    for gradients in batch:
        _write_parameters(buffer, gradients)
    return buffer.getvalue()


def decode_gradient_batch(data: bytes) -> List[List[LayerParameter]]:
    buffer = io.BytesIO(data)
    num_batches = _read_int(buffer)
    if num_batches < 0:
        raise ValueError(f"Invalid batch count: {num_batches}")
    batch = [_read_parameters(buffer) for _ in range(num_batches)]
    _expect_end(buffer)
    return batch
