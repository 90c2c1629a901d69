"""
Parameter stores used by a network during training.

A store receives one gradient array per trained sample through ``push`` and
hands back the current parameters through ``pull``. Three strategies are
available:

- LocalParameterStore: in-process aggregation shared by worker threads
- GroupCommParameterStore: collective reduce/broadcast with an aggregator
- RemoteParameterStore: remote key-value parameter server over HTTP

``push(None)`` is a dummy push: it sends any partially filled batch and
otherwise contributes nothing. Workers issue dummy pushes while waiting for
slower peers at the end of an iteration.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from communication.collectives import BroadcastReceiver, ReduceSender
from communication.serialization import (
    decode_layer_parameters,
    encode_gradient_batch,
    encode_gradient_contribution,
    encode_validation_stats_pair,
)
from core.layer_parameter import (
    LayerParameter,
    apply_update,
    clone_parameters,
    zeros_like_parameters,
)
from core.validator import ValidationStats
from coordinator.parameter_updater import VALIDATION, WHOLE_MODEL
from worker.parameter_client import ParameterServerClient

logger = logging.getLogger(__name__)


class ParameterStore(ABC):
    """Common interface of all parameter stores."""

    @abstractmethod
    def push(self, gradients: Optional[List[LayerParameter]]):
        """Hand over the gradient array of one sample, or None for a dummy push."""

    @abstractmethod
    def pull(self) -> List[LayerParameter]:
        """Current parameters; an empty list marks the end of an iteration."""


class LocalParameterStore(ParameterStore):
    """
    Aggregates gradients inside one process.

    Gradients are summed until the next pull, which applies
    ``p - (stepsize / n) * sum`` for the ``n`` gradients pushed since the
    previous update. A single lock makes push and pull safe to call from
    several worker threads.
    """

    def __init__(self, parameters: List[LayerParameter], stepsize: float):
        self.stepsize = stepsize
        self._parameters = clone_parameters(parameters)
        self._gradient_sum = zeros_like_parameters(parameters)
        self._num_updates = 0
        self._lock = threading.Lock()

    @property
    def num_layers(self) -> int:
        return len(self._parameters)

    def push(self, gradients: Optional[List[LayerParameter]]):
        """
        Accumulate a gradient array.

        Raises:
            RuntimeError: If the array length differs from the layer count
        """
        if not gradients:
            return
        if len(gradients) != len(self._parameters):
            raise RuntimeError(
                f"The number of parameter gradients ({len(gradients)}) is not equal to "
                f"the number of layers ({len(self._parameters)})"
            )

        with self._lock:
            for total, gradient in zip(self._gradient_sum, gradients):
                if total.is_empty():
                    continue
                total.weight.add_(gradient.weight.to(total.weight.dtype))
                total.bias.add_(gradient.bias.to(total.bias.dtype))
            self._num_updates += 1

    def pull(self) -> List[LayerParameter]:
        with self._lock:
            if self._num_updates > 0:
                self._parameters = apply_update(
                    self._parameters, self._gradient_sum, self._num_updates, self.stepsize
                )
                logger.debug(f"Applied update from {self._num_updates} gradients")
                self._gradient_sum = zeros_like_parameters(self._parameters)
                self._num_updates = 0
            return clone_parameters(self._parameters)


class GroupCommParameterStore(ParameterStore):
    """
    Sends summed gradients to the aggregator through a collective reduce.

    Every ``batch_size`` pushes the worker sends ``(count, gradient_sum)``;
    a contribution with count 0 is a dummy push. Pulls receive the parameter
    array broadcast by the aggregator.
    """

    def __init__(
        self,
        batch_size: int,
        gradient_sender: ReduceSender,
        parameter_receiver: BroadcastReceiver,
        validation_sender: ReduceSender
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.batch_size = batch_size
        self.gradient_sender = gradient_sender
        self.parameter_receiver = parameter_receiver
        self.validation_sender = validation_sender

        self._gradient_sum: List[LayerParameter] = []
        self._count = 0
        self._push_count = 0

    def push(self, gradients: Optional[List[LayerParameter]]):
        """
        Add the gradient array of one sample to the pending batch.

        Raises:
            RuntimeError: If the array length differs from the pending sum
        """
        if gradients is None:
            self._flush()
            return

        if self._count > 0 and len(gradients) != len(self._gradient_sum):
            raise RuntimeError(
                f"The number of parameter gradients ({len(gradients)}) is not equal to "
                f"the number of accumulated gradients ({len(self._gradient_sum)})"
            )
        if gradients:
            if not self._gradient_sum:
                self._gradient_sum = clone_parameters(gradients)
            else:
                self._gradient_sum = [a + b for a, b in zip(self._gradient_sum, gradients)]
        self._count += 1
        self._push_count += 1

        if self._push_count >= self.batch_size:
            self._flush()

    def _flush(self):
        self.gradient_sender.send(encode_gradient_contribution(self._count, self._gradient_sum))
        self._gradient_sum = []
        self._count = 0
        self._push_count = 0

    def pull(self) -> List[LayerParameter]:
        return decode_layer_parameters(self.parameter_receiver.receive())

    def push_validation_stats(self, training: ValidationStats, cross_validation: ValidationStats):
        self.validation_sender.send(encode_validation_stats_pair(training, cross_validation))


class RemoteParameterStore(ParameterStore):
    """
    Batches gradients locally and pushes them to a remote parameter server.
    """

    def __init__(
        self,
        client: ParameterServerClient,
        batch_size: int,
        retry_count: int = 3,
        retry_delay: float = 0.0
    ):
        """
        Args:
            client: Parameter server client
            batch_size: Number of gradient arrays per push
            retry_count: Number of pull attempts before giving up
            retry_delay: Base delay between pull attempts (exponential backoff)
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.client = client
        self.batch_size = batch_size
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self._batch: List[List[LayerParameter]] = []

    def push(self, gradients: Optional[List[LayerParameter]]):
        if gradients is None:
            self._flush()
            return

        self._batch.append(gradients)
        if len(self._batch) >= self.batch_size:
            self._flush()

    def _flush(self):
        if not self._batch:
            return
        self.client.push(WHOLE_MODEL, encode_gradient_batch(self._batch))
        self._batch = []

    def pull(self) -> List[LayerParameter]:
        """
        Pull the current model, retrying while the server has none yet.

        Raises:
            RuntimeError: If every attempt failed
        """
        for attempt in range(self.retry_count):
            payload = self.client.pull(WHOLE_MODEL)
            if payload is not None:
                return decode_layer_parameters(payload)

            if attempt < self.retry_count - 1:
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(
                    f"Model not available (attempt {attempt + 1}/{self.retry_count}). "
                    f"Retrying in {delay}s..."
                )
                if delay > 0:
                    time.sleep(delay)

        logger.error(f"Failed to pull model after {self.retry_count} attempts")
        raise RuntimeError(f"Retried {self.retry_count} times but failed to pull model from server.")

    def push_validation_stats(self, training: ValidationStats, cross_validation: ValidationStats):
        self.client.push(VALIDATION, encode_validation_stats_pair(training, cross_validation))
