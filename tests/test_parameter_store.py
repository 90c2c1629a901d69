"""
Unit tests for the parameter stores.

Tests:
- Local aggregation and update formula
- Collective batching and dummy pushes
- Remote batching and pull retries
"""

import threading

import pytest
import torch

from communication.collectives import (
    GRADIENT_REDUCE,
    PARAMETER_BROADCAST,
    VALIDATION_REDUCE,
    CommunicationGroup,
)
from communication.serialization import (
    decode_gradient_batch,
    decode_gradient_contribution,
    decode_validation_stats_pair,
    encode_layer_parameters,
)
from core.layer_parameter import LayerParameter, parameters_allclose
from core.validator import ValidationStats
from coordinator.parameter_updater import VALIDATION, WHOLE_MODEL
from worker.parameter_store import GroupCommParameterStore, LocalParameterStore, RemoteParameterStore


def _parameters(value: float):
    return [
        LayerParameter(weight=torch.full((2, 3), value), bias=torch.full((3,), value)),
        LayerParameter.empty(),
    ]


class TestLocalParameterStore:
    """Test in-process aggregation."""

    def test_pull_without_pushes(self):
        """Test that pulling without gradients returns the initial parameters."""
        store = LocalParameterStore(_parameters(1.0), stepsize=0.1)
        assert parameters_allclose(store.pull(), _parameters(1.0))

    def test_update_formula(self):
        """Test p - (stepsize / n) * sum of gradients."""
        store = LocalParameterStore(_parameters(1.0), stepsize=0.1)
        store.push(_parameters(2.0))
        store.push(_parameters(4.0))

        # 1.0 - 0.1 / 2 * 6.0
        assert parameters_allclose(store.pull(), _parameters(0.7))

    def test_pull_resets_accumulator(self):
        """Test that a second pull without pushes does not apply another update."""
        store = LocalParameterStore(_parameters(1.0), stepsize=0.1)
        store.push(_parameters(2.0))
        first = store.pull()
        second = store.pull()
        assert parameters_allclose(first, second)

    def test_pull_returns_copies(self):
        """Test that callers cannot change the stored parameters."""
        store = LocalParameterStore(_parameters(1.0), stepsize=0.1)
        pulled = store.pull()
        pulled[0].weight.fill_(5.0)
        assert parameters_allclose(store.pull(), _parameters(1.0))

    def test_empty_and_dummy_pushes_ignored(self):
        """Test that empty arrays and dummy pushes do not count as updates."""
        store = LocalParameterStore(_parameters(1.0), stepsize=0.1)
        store.push([])
        store.push(None)
        assert parameters_allclose(store.pull(), _parameters(1.0))

    def test_linearity(self):
        """Test that pushing a sum equals pushing the terms over the same count."""
        first = LocalParameterStore(_parameters(0.0), stepsize=1.0)
        first.push(_parameters(3.0))

        second = LocalParameterStore(_parameters(0.0), stepsize=1.0)
        second.push(_parameters(1.0))
        second.push(_parameters(5.0))

        assert parameters_allclose(first.pull(), second.pull())

    def test_length_mismatch(self):
        """Test that a gradient array with the wrong length is rejected."""
        store = LocalParameterStore(_parameters(1.0), stepsize=0.1)
        with pytest.raises(RuntimeError):
            store.push([LayerParameter.empty()])

    def test_concurrent_pushes(self):
        """Test that pushes from several threads are all accounted for."""
        store = LocalParameterStore(_parameters(0.0), stepsize=1.0)

        def push_many():
            for _ in range(50):
                store.push(_parameters(1.0))

        threads = [threading.Thread(target=push_many) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Mean gradient is 1.0
        assert parameters_allclose(store.pull(), _parameters(-1.0))


@pytest.fixture
def group():
    return CommunicationGroup(
        1,
        reduce_operations=(GRADIENT_REDUCE, VALIDATION_REDUCE),
        broadcast_operations=(PARAMETER_BROADCAST,)
    )


@pytest.fixture
def group_store(group):
    return GroupCommParameterStore(
        batch_size=2,
        gradient_sender=group.reduce_sender(GRADIENT_REDUCE, 0),
        parameter_receiver=group.broadcast_receiver(PARAMETER_BROADCAST, 0),
        validation_sender=group.reduce_sender(VALIDATION_REDUCE, 0)
    )


class TestGroupCommParameterStore:
    """Test collective batching."""

    def test_flush_after_batch(self, group, group_store):
        """Test that a contribution is sent once the batch is full."""
        receiver = group.reduce_receiver(GRADIENT_REDUCE)
        group_store.push(_parameters(1.0))
        group_store.push(_parameters(2.0))

        count, gradient_sum = decode_gradient_contribution(receiver.receive()[0])
        assert count == 2
        assert parameters_allclose(gradient_sum, _parameters(3.0))

    def test_dummy_push_flushes_partial_batch(self, group, group_store):
        """Test that push(None) sends what has been accumulated."""
        receiver = group.reduce_receiver(GRADIENT_REDUCE)
        group_store.push(_parameters(1.0))
        group_store.push(None)

        count, gradient_sum = decode_gradient_contribution(receiver.receive()[0])
        assert count == 1
        assert parameters_allclose(gradient_sum, _parameters(1.0))

    def test_dummy_push_without_gradients(self, group, group_store):
        """Test that an idle dummy push sends count 0."""
        receiver = group.reduce_receiver(GRADIENT_REDUCE)
        group_store.push(None)

        count, gradient_sum = decode_gradient_contribution(receiver.receive()[0])
        assert count == 0
        assert gradient_sum == []

    def test_empty_gradients_are_counted(self, group, group_store):
        """Test that networks without learnable layers still report their samples."""
        receiver = group.reduce_receiver(GRADIENT_REDUCE)
        group_store.push([])
        group_store.push([])

        count, gradient_sum = decode_gradient_contribution(receiver.receive()[0])
        assert count == 2
        assert gradient_sum == []

    def test_length_mismatch(self, group, group_store):
        """Test that a gradient array of another length is rejected before sending."""
        receiver = group.reduce_receiver(GRADIENT_REDUCE)
        group_store.push(_parameters(1.0))
        with pytest.raises(RuntimeError, match="number of parameter gradients"):
            group_store.push([LayerParameter.empty()])
        with pytest.raises(RuntimeError):
            group_store.push([])

        group_store.push(None)
        count, gradient_sum = decode_gradient_contribution(receiver.receive()[0])
        assert count == 1
        assert parameters_allclose(gradient_sum, _parameters(1.0))

    def test_pull_decodes_broadcast(self, group, group_store):
        """Test that pull returns the broadcast parameter array."""
        group.broadcast_sender(PARAMETER_BROADCAST).send(encode_layer_parameters(_parameters(0.5)))
        assert parameters_allclose(group_store.pull(), _parameters(0.5))

        group.broadcast_sender(PARAMETER_BROADCAST).send(encode_layer_parameters([]))
        assert group_store.pull() == []

    def test_push_validation_stats(self, group, group_store):
        """Test that stats are sent through the validation reduce."""
        group_store.push_validation_stats(ValidationStats(10, 7), ValidationStats(4, 1))
        training, cross_validation = decode_validation_stats_pair(
            group.reduce_receiver(VALIDATION_REDUCE).receive()[0]
        )
        assert training == ValidationStats(10, 7)
        assert cross_validation == ValidationStats(4, 1)


class FakeClient:
    """In-memory stand-in for ParameterServerClient."""

    def __init__(self, responses=None):
        self.pushed = []
        self.responses = list(responses or [])
        self.pulls = 0

    def push(self, key, payload):
        self.pushed.append((key, payload))

    def pull(self, key):
        self.pulls += 1
        return self.responses.pop(0) if self.responses else None


class TestRemoteParameterStore:
    """Test remote batching and retries."""

    def test_batches_gradients(self):
        """Test that gradients are pushed as one batch list."""
        client = FakeClient()
        store = RemoteParameterStore(client, batch_size=2)

        store.push(_parameters(1.0))
        assert client.pushed == []
        store.push(_parameters(2.0))

        key, payload = client.pushed[0]
        assert key == WHOLE_MODEL
        batch = decode_gradient_batch(payload)
        assert len(batch) == 2
        assert parameters_allclose(batch[1], _parameters(2.0))

    def test_dummy_push(self):
        """Test that push(None) flushes a partial batch and skips empty ones."""
        client = FakeClient()
        store = RemoteParameterStore(client, batch_size=3)

        store.push(None)
        assert client.pushed == []

        store.push(_parameters(1.0))
        store.push(None)
        assert len(decode_gradient_batch(client.pushed[0][1])) == 1

    def test_pull_retries(self):
        """Test that pull retries until the model is available."""
        client = FakeClient(responses=[None, encode_layer_parameters(_parameters(0.25))])
        store = RemoteParameterStore(client, batch_size=1, retry_count=3)

        assert parameters_allclose(store.pull(), _parameters(0.25))
        assert client.pulls == 2

    def test_pull_gives_up(self):
        """Test that pull fails after the configured attempts."""
        client = FakeClient()
        store = RemoteParameterStore(client, batch_size=1, retry_count=3)

        with pytest.raises(RuntimeError, match="Retried 3 times"):
            store.pull()
        assert client.pulls == 3

    def test_push_validation_stats(self):
        """Test that stats are pushed to the validation key."""
        client = FakeClient()
        store = RemoteParameterStore(client, batch_size=1)
        store.push_validation_stats(ValidationStats(3, 2), ValidationStats(1, 1))

        key, payload = client.pushed[0]
        assert key == VALIDATION
        assert decode_validation_stats_pair(payload) == (ValidationStats(3, 2), ValidationStats(1, 1))
