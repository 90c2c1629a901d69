"""
Training loops of a worker.

Every worker runs ``max_iterations`` logical iterations over its local data.
Training samples are trained on and then validated; validation samples are
only validated. What happens at the end of an iteration depends on the
parameter store:

- Local: nothing to synchronize, stats are logged directly.
- Collective: the worker drains (dummy push, pull) until the aggregator
  broadcasts the empty end-of-iteration array, then sends its stats.
- Remote: the worker flushes its partial batch and pushes its stats.
"""

import logging
import threading
import time
from typing import List, Tuple

from core.config import NetworkConfig
from core.dataset import Sample, partition_dataset
from core.network import NeuralNetwork, initial_parameters
from core.validator import ValidationStats, Validator, generate_iteration_log
from worker.config import WorkerConfig
from worker.parameter_client import ParameterServerClient
from worker.parameter_store import (
    GroupCommParameterStore,
    LocalParameterStore,
    ParameterStore,
    RemoteParameterStore,
)

logger = logging.getLogger(__name__)


def run_iteration(
    dataset: List[Sample],
    network: NeuralNetwork,
    training_validator: Validator,
    cross_validator: Validator
):
    """Run one pass over the local data."""
    for input, label, is_validation in dataset:
        if is_validation:
            cross_validator.validate(input, label)
        else:
            network.train(input, label)
            training_validator.validate(input, label)


def drain(network: NeuralNetwork, store: ParameterStore, idle_sleep: float = 0.0) -> int:
    """
    Keep the collective operations going until the iteration is over.

    Sends dummy pushes and adopts the pulled parameters until the pull
    returns the empty end-of-iteration array.

    Args:
        network: Network of this worker
        store: Parameter store connected to the aggregator
        idle_sleep: Seconds to wait between dummy pushes (0 disables waiting)

    Returns:
        Number of rounds served before the end of the iteration
    """
    rounds = 0
    while True:
        store.push(None)
        parameters = store.pull()
        if len(parameters) == 0:
            break
        network.adopt_parameters(parameters)
        rounds += 1
        if idle_sleep > 0:
            time.sleep(idle_sleep)
    logger.debug(f"Drained iteration after {rounds} rounds")
    return rounds


class _WorkerBase:
    """Network and validators of one worker."""

    def __init__(self, config: NetworkConfig, dataset: List[Sample], store: ParameterStore, name: str):
        self.config = config
        self.dataset = dataset
        self.store = store
        self.name = name
        self.network = NeuralNetwork.from_config(config, parameter_store=store)
        self.training_validator = Validator(self.network)
        self.cross_validator = Validator(self.network)

    def _reset_validators(self):
        self.training_validator.reset()
        self.cross_validator.reset()


class GroupCommWorker(_WorkerBase):
    """
    Worker training against a collective aggregator.
    """

    def __init__(
        self,
        config: NetworkConfig,
        dataset: List[Sample],
        store: GroupCommParameterStore,
        rank: int = 0,
        idle_sleep: float = 0.0
    ):
        super().__init__(config, dataset, store, name=f"worker_{rank}")
        self.rank = rank
        self.idle_sleep = idle_sleep
        self.drain_rounds: List[int] = []

    def run(self):
        logger.info(f"{self.name}: starting {self.config.max_iterations} iterations on {len(self.dataset)} samples")

        for iteration in range(self.config.max_iterations):
            run_iteration(self.dataset, self.network, self.training_validator, self.cross_validator)
            self.drain_rounds.append(drain(self.network, self.store, self.idle_sleep))

            self.store.push_validation_stats(self.training_validator.stats, self.cross_validator.stats)
            logger.debug(
                f"{self.name}: iteration {iteration} done, "
                f"training error {self.training_validator.stats.error:.4f}"
            )
            self._reset_validators()

        logger.info(f"{self.name}: finished")


class ParameterServerWorker(_WorkerBase):
    """
    Worker training against the remote key-value parameter server.
    """

    def __init__(
        self,
        config: NetworkConfig,
        dataset: List[Sample],
        store: RemoteParameterStore,
        rank: int = 0
    ):
        super().__init__(config, dataset, store, name=f"worker_{rank}")
        self.rank = rank

    def run(self):
        logger.info(f"{self.name}: starting {self.config.max_iterations} iterations on {len(self.dataset)} samples")

        for iteration in range(self.config.max_iterations):
            run_iteration(self.dataset, self.network, self.training_validator, self.cross_validator)

            # Send the partial batch so no gradient is lost across iterations
            self.store.push(None)
            self.network.adopt_parameters(self.store.pull())

            self.store.push_validation_stats(self.training_validator.stats, self.cross_validator.stats)
            self._reset_validators()

        logger.info(f"{self.name}: finished")


def run_remote_worker(config: NetworkConfig, worker_config: WorkerConfig, dataset: List[Sample]) -> ParameterServerWorker:
    """
    Train this worker's shard against the remote parameter server.

    Args:
        config: Network configuration shared by all workers
        worker_config: Identity and server connection of this worker
        dataset: Full dataset; the worker trains on its interleaved shard

    Returns:
        The finished worker
    """
    logger.info(f"Starting remote worker: {worker_config}")
    shard = partition_dataset(dataset, worker_config.rank, worker_config.world_size)

    with ParameterServerClient(worker_config.parameter_server_url, timeout=worker_config.request_timeout) as client:
        store = RemoteParameterStore(
            client,
            config.batch_size,
            retry_count=worker_config.pull_retry_count,
            retry_delay=worker_config.pull_retry_delay
        )
        worker = ParameterServerWorker(config, shard, store, rank=worker_config.rank)
        worker.run()
    return worker


class LocalTrainer:
    """
    Trains within a single process.

    ``num_threads`` worker threads each own a network and a shard of the
    data, and share one LocalParameterStore.
    """

    def __init__(self, config: NetworkConfig, dataset: List[Sample], num_threads: int = 1):
        if num_threads <= 0:
            raise ValueError(f"num_threads must be positive, got {num_threads}")

        self.config = config
        self.store = LocalParameterStore(initial_parameters(config), config.stepsize)
        self.workers = [
            _WorkerBase(config, partition_dataset(dataset, rank, num_threads), self.store, f"thread_{rank}")
            for rank in range(num_threads)
        ]
        self.history: List[Tuple[ValidationStats, ValidationStats]] = []

    def _run_worker(self, worker: _WorkerBase, errors: List[BaseException]):
        try:
            run_iteration(worker.dataset, worker.network, worker.training_validator, worker.cross_validator)
            worker.network.adopt_parameters(self.store.pull())
        except Exception as e:
            logger.error(f"{worker.name} failed: {e}")
            errors.append(e)

    def run(self) -> List[Tuple[ValidationStats, ValidationStats]]:
        """
        Run every iteration.

        Returns:
            Pooled (training, cross validation) stats of every iteration
        """
        for iteration in range(self.config.max_iterations):
            errors: List[BaseException] = []
            if len(self.workers) == 1:
                self._run_worker(self.workers[0], errors)
            else:
                threads = [
                    threading.Thread(target=self._run_worker, args=(worker, errors), name=worker.name)
                    for worker in self.workers
                ]
                for thread in threads:
                    thread.start()
                for thread in threads:
                    thread.join()
            if errors:
                raise errors[0]

            training = ValidationStats()
            cross_validation = ValidationStats()
            for worker in self.workers:
                training.merge(worker.training_validator.stats)
                cross_validation.merge(worker.cross_validator.stats)
                worker._reset_validators()

            self.history.append((training, cross_validation))
            logger.info(generate_iteration_log(training, cross_validation, iteration))

        return self.history

    @property
    def parameters(self):
        return self.store.pull()
