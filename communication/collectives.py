"""
Collective reduce and broadcast over a fixed group of participants.

A communication group connects one aggregator (the root) with a fixed set of
workers through message channels:

- Reduce: every worker sends one payload; the root receives exactly one
  payload per worker per call.
- Broadcast: the root sends one payload; every worker receives it.

Channels are ``queue.Queue`` objects when participants are threads, or
queues from a ``torch.multiprocessing`` context when participants are
processes. Nothing is shared between participants except the channels.
Every call blocks until its counterpart shows up; there is no timeout, so a
participant that stops calling an operation stalls the others.
"""

import logging
import queue
import time
from collections import deque
from typing import Dict, List, Sequence

logger = logging.getLogger(__name__)


GRADIENT_REDUCE = "gradient_reduce"
VALIDATION_REDUCE = "validation_reduce"
PARAMETER_BROADCAST = "parameter_broadcast"


class _Channel:
    """Base class holding the simulated network latency."""

    def __init__(self, name: str, latency_ms: float):
        self.name = name
        self.latency_ms = latency_ms

    def _simulate_latency(self):
        if self.latency_ms > 0:
            time.sleep(self.latency_ms / 1000.0)


class ReduceSender(_Channel):
    """Worker end of a reduce operation."""

    def __init__(self, name: str, rank: int, channel, latency_ms: float = 0.0):
        super().__init__(name, latency_ms)
        self.rank = rank
        self._channel = channel

    def send(self, payload: bytes):
        self._simulate_latency()
        self._channel.put((self.rank, payload))


class ReduceReceiver(_Channel):
    """
    Root end of a reduce operation.

    Holds on to payloads that arrive early for the next round, so that each
    call to ``receive`` returns exactly one payload per worker.
    """

    def __init__(self, name: str, num_workers: int, channel, latency_ms: float = 0.0):
        super().__init__(name, latency_ms)
        self.num_workers = num_workers
        self._channel = channel
        self._pending: Dict[int, deque] = {rank: deque() for rank in range(num_workers)}

    def receive(self) -> List[bytes]:
        """
        Block until every worker has contributed to this round.

        Returns:
            Payloads ordered by worker rank
        """
        received: Dict[int, bytes] = {}
        for rank, pending in self._pending.items():
            if pending:
                received[rank] = pending.popleft()

        while len(received) < self.num_workers:
            rank, payload = self._channel.get()
            if rank in received:
                self._pending[rank].append(payload)
            else:
                received[rank] = payload

        self._simulate_latency()
        return [received[rank] for rank in range(self.num_workers)]


class BroadcastSender(_Channel):
    """Root end of a broadcast operation."""

    def __init__(self, name: str, channels: Sequence, latency_ms: float = 0.0):
        super().__init__(name, latency_ms)
        self._channels = list(channels)

    def send(self, payload: bytes):
        self._simulate_latency()
        for channel in self._channels:
            channel.put(payload)


class BroadcastReceiver(_Channel):
    """Worker end of a broadcast operation."""

    def __init__(self, name: str, rank: int, channel, latency_ms: float = 0.0):
        super().__init__(name, latency_ms)
        self.rank = rank
        self._channel = channel

    def receive(self) -> bytes:
        payload = self._channel.get()
        self._simulate_latency()
        return payload


class CommunicationGroup:
    """
    Channels for one aggregator and ``num_workers`` workers.

    Operations are declared up front; each participant asks the group for the
    ends it needs and hands them to its task at construction time.
    """

    def __init__(
        self,
        num_workers: int,
        reduce_operations: Sequence[str] = (GRADIENT_REDUCE, VALIDATION_REDUCE),
        broadcast_operations: Sequence[str] = (PARAMETER_BROADCAST,),
        mp_context=None,
        latency_ms: float = 0.0
    ):
        """
        Args:
            num_workers: Number of workers in the group
            reduce_operations: Names of the reduce operations
            broadcast_operations: Names of the broadcast operations
            mp_context: ``torch.multiprocessing`` context for process
                participants, or None for threads
            latency_ms: Simulated network latency in milliseconds
        """
        if num_workers <= 0:
            raise ValueError(f"num_workers must be positive, got {num_workers}")

        self.num_workers = num_workers
        self.latency_ms = latency_ms
        make_channel = mp_context.Queue if mp_context is not None else queue.Queue

        self._reduce_channels = {name: make_channel() for name in reduce_operations}
        self._broadcast_channels = {
            name: [make_channel() for _ in range(num_workers)]
            for name in broadcast_operations
        }
        self._reduce_receivers: Dict[str, ReduceReceiver] = {}

        logger.debug(
            f"Created communication group: {num_workers} workers, "
            f"reduce={list(reduce_operations)}, broadcast={list(broadcast_operations)}"
        )

    def _check_rank(self, rank: int):
        if not 0 <= rank < self.num_workers:
            raise ValueError(f"rank must be in [0, {self.num_workers}), got {rank}")

    def _reduce_channel(self, name: str):
        if name not in self._reduce_channels:
            raise ValueError(f"Unknown reduce operation: {name}")
        return self._reduce_channels[name]

    def _broadcast_channel_list(self, name: str) -> List:
        if name not in self._broadcast_channels:
            raise ValueError(f"Unknown broadcast operation: {name}")
        return self._broadcast_channels[name]

    def reduce_sender(self, name: str, rank: int) -> ReduceSender:
        self._check_rank(rank)
        return ReduceSender(name, rank, self._reduce_channel(name), self.latency_ms)

    def reduce_receiver(self, name: str) -> ReduceReceiver:
        # One receiver per operation: early payloads are buffered inside it.
        if name not in self._reduce_receivers:
            self._reduce_receivers[name] = ReduceReceiver(
                name, self.num_workers, self._reduce_channel(name), self.latency_ms
            )
        return self._reduce_receivers[name]

    def broadcast_sender(self, name: str) -> BroadcastSender:
        return BroadcastSender(name, self._broadcast_channel_list(name), self.latency_ms)

    def broadcast_receiver(self, name: str, rank: int) -> BroadcastReceiver:
        self._check_rank(rank)
        return BroadcastReceiver(name, rank, self._broadcast_channel_list(name)[rank], self.latency_ms)

