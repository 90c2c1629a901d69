"""
Single-machine simulation of collective synchronous training.

Runs one aggregator and ``world_size`` workers connected by a
CommunicationGroup, either as threads of this process or as separate
processes started through ``torch.multiprocessing``.
"""

import argparse
import logging
import queue
import threading
import time
from dataclasses import replace
from typing import List, Optional, Tuple

import torch.multiprocessing as mp

from communication.collectives import (
    GRADIENT_REDUCE,
    PARAMETER_BROADCAST,
    VALIDATION_REDUCE,
    CommunicationGroup,
)
from core.config import LayerConfig, NetworkConfig, get_shape_length
from core.dataset import Sample, create_dummy_dataset, partition_dataset
from core.network import build_layers
from core.validator import ValidationStats
from coordinator.parameter_server import GroupCommParameterServer
from worker.parameter_store import GroupCommParameterStore
from worker.trainer import GroupCommWorker, LocalTrainer


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Seconds between checks for failed participants
POLL_INTERVAL = 0.1


def _run_aggregator(config: NetworkConfig, gradient_receiver, validation_receiver, parameter_sender, results=None):
    server = GroupCommParameterServer(config, gradient_receiver, validation_receiver, parameter_sender)
    history = server.run()
    if results is not None:
        results.put(history)
    return server


def _run_worker(
    config: NetworkConfig,
    dataset: List[Sample],
    rank: int,
    gradient_sender,
    parameter_receiver,
    validation_sender,
    idle_sleep: float
):
    store = GroupCommParameterStore(config.batch_size, gradient_sender, parameter_receiver, validation_sender)
    worker = GroupCommWorker(config, dataset, store, rank=rank, idle_sleep=idle_sleep)
    worker.run()
    return worker


def train_distributed(
    config: NetworkConfig,
    dataset: List[Sample],
    world_size: int = 2,
    use_processes: bool = False,
    idle_sleep: float = 0.0,
    latency_ms: float = 0.0
) -> List[Tuple[ValidationStats, ValidationStats]]:
    """
    Run collective training simulation.

    Args:
        config: Network configuration shared by all participants
        dataset: Full dataset; every worker trains on an interleaved shard
        world_size: Number of workers
        use_processes: Run participants as processes instead of threads
        idle_sleep: Seconds between dummy pushes while a worker waits
        latency_ms: Simulated network latency in milliseconds

    Returns:
        Pooled (training, cross validation) stats of every iteration
    """
    logger.info("=" * 60)
    logger.info("Collective Training Simulation")
    logger.info("=" * 60)
    logger.info(f"Layers: {len(config.layers)}")
    logger.info(f"Workers: {world_size} ({'processes' if use_processes else 'threads'})")
    logger.info(f"Iterations: {config.max_iterations}")
    logger.info(f"Batch size: {config.batch_size}")
    logger.info(f"Stepsize: {config.stepsize}")
    logger.info(f"Simulated latency: {latency_ms}ms")

    context = mp.get_context("spawn") if use_processes else None
    group = CommunicationGroup(
        world_size,
        reduce_operations=(GRADIENT_REDUCE, VALIDATION_REDUCE),
        broadcast_operations=(PARAMETER_BROADCAST,),
        mp_context=context,
        latency_ms=latency_ms
    )

    worker_args = [
        (
            config,
            partition_dataset(dataset, rank, world_size),
            rank,
            group.reduce_sender(GRADIENT_REDUCE, rank),
            group.broadcast_receiver(PARAMETER_BROADCAST, rank),
            group.reduce_sender(VALIDATION_REDUCE, rank),
            idle_sleep,
        )
        for rank in range(world_size)
    ]
    aggregator_args = (
        config,
        group.reduce_receiver(GRADIENT_REDUCE),
        group.reduce_receiver(VALIDATION_REDUCE),
        group.broadcast_sender(PARAMETER_BROADCAST),
    )

    start_time = time.time()
    if use_processes:
        history = _train_processes(context, aggregator_args, worker_args)
    else:
        history = _train_threads(aggregator_args, worker_args)
    total_time = time.time() - start_time

    logger.info(f"Training complete: {len(history)} iterations in {total_time:.2f}s")
    if history:
        training, cross_validation = history[-1]
        logger.info(
            f"Final training error: {training.error:.4f}, "
            f"final cross validation error: {cross_validation.error:.4f}"
        )
    return history


def _train_threads(aggregator_args, worker_args) -> List[Tuple[ValidationStats, ValidationStats]]:
    errors: List[BaseException] = []
    servers: List[GroupCommParameterServer] = []

    def run(target, args, sink: Optional[list] = None):
        try:
            result = target(*args)
            if sink is not None:
                sink.append(result)
        except Exception as e:
            logger.error(f"{threading.current_thread().name} failed: {e}")
            errors.append(e)

    # Daemon threads: peers of a failed participant stay blocked in a collective
    threads = [
        threading.Thread(target=run, args=(_run_aggregator, aggregator_args, servers), name="aggregator", daemon=True)
    ]
    threads += [
        threading.Thread(target=run, args=(_run_worker, args), name=f"worker_{args[2]}", daemon=True)
        for args in worker_args
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        while thread.is_alive() and not errors:
            thread.join(timeout=POLL_INTERVAL)

    if errors:
        blocked = [thread.name for thread in threads if thread.is_alive()]
        logger.error(f"Abandoning blocked participants: {blocked}")
        raise RuntimeError(f"Simulation failed: {errors[0]}") from errors[0]
    return servers[0].history


def _train_processes(context, aggregator_args, worker_args) -> List[Tuple[ValidationStats, ValidationStats]]:
    results = context.Queue()
    processes = [context.Process(target=_run_aggregator, args=aggregator_args + (results,), name="aggregator")]
    processes += [
        context.Process(target=_run_worker, args=args, name=f"worker_{args[2]}")
        for args in worker_args
    ]
    for process in processes:
        process.start()

    # Read before joining so the aggregator can flush its result queue
    history = None
    while history is None:
        try:
            history = results.get(timeout=POLL_INTERVAL)
        except queue.Empty:
            failed = [process.name for process in processes if process.exitcode not in (None, 0)]
            if failed:
                logger.error(f"Participants failed: {failed}, terminating the group")
                for process in processes:
                    if process.is_alive():
                        process.terminate()
                for process in processes:
                    process.join()
                raise RuntimeError(f"Simulation processes failed: {failed}")

    for process in processes:
        process.join()

    failed = [process.name for process in processes if process.exitcode != 0]
    if failed:
        raise RuntimeError(f"Simulation processes failed: {failed}")
    return history


def demo_config(
    input_size: int = 8,
    hidden_size: int = 16,
    num_classes: int = 3,
    batch_size: int = 4,
    max_iterations: int = 5,
    stepsize: float = 0.1
) -> NetworkConfig:
    """Two-layer sigmoid network for the synthetic dataset."""
    return NetworkConfig(
        input_shape=str(input_size),
        layers=[
            LayerConfig(type="FullyConnected", num_output=hidden_size, init_weight=0.1, random_seed=1),
            LayerConfig(type="Activation", activation_function="sigmoid"),
            LayerConfig(type="FullyConnected", num_output=num_classes, init_weight=0.1, random_seed=2),
            LayerConfig(type="ActivationWithLoss", activation_function="softmax", loss_function="crossentropy"),
        ],
        stepsize=stepsize,
        batch_size=batch_size,
        max_iterations=max_iterations
    )


def main():
    parser = argparse.ArgumentParser(description="Synchronous Neural Network Training Simulation")

    parser.add_argument(
        '--mode',
        type=str,
        default='distributed',
        choices=['distributed', 'local', 'both'],
        help='Training mode'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to a network config JSON file (defaults to a small demo network)'
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=4,
        help='Number of workers'
    )
    parser.add_argument(
        '--samples',
        type=int,
        default=400,
        help='Number of synthetic samples'
    )
    parser.add_argument(
        '--iterations',
        type=int,
        default=None,
        help='Override the number of iterations'
    )
    parser.add_argument(
        '--processes',
        action='store_true',
        help='Run workers as processes instead of threads'
    )
    parser.add_argument(
        '--idle-sleep',
        type=float,
        default=0.0,
        help='Seconds between dummy pushes while waiting at the end of an iteration'
    )
    parser.add_argument(
        '--latency',
        type=float,
        default=0.0,
        help='Simulated network latency in milliseconds'
    )

    args = parser.parse_args()

    config = NetworkConfig.from_json_file(args.config) if args.config else demo_config()
    if args.iterations is not None:
        config = replace(config, max_iterations=args.iterations)

    input_size = get_shape_length(config.input_dims)
    num_classes = build_layers(config)[-1].num_output
    dataset = create_dummy_dataset(args.samples, input_size, num_classes)

    if args.mode == 'distributed' or args.mode == 'both':
        distributed_history = train_distributed(
            config,
            dataset,
            world_size=args.workers,
            use_processes=args.processes,
            idle_sleep=args.idle_sleep,
            latency_ms=args.latency
        )

    if args.mode == 'local' or args.mode == 'both':
        local_history = LocalTrainer(config, dataset, num_threads=args.workers).run()

    # Compare results if both were run
    if args.mode == 'both' and distributed_history and local_history:
        print(f"\n{'='*60}")
        print("Comparison: Distributed vs Local")
        print(f"{'='*60}")
        print("Final training error:")
        print(f"  Distributed: {distributed_history[-1][0].error:.4f}")
        print(f"  Local:       {local_history[-1][0].error:.4f}")
        print("Final cross validation error:")
        print(f"  Distributed: {distributed_history[-1][1].error:.4f}")
        print(f"  Local:       {local_history[-1][1].error:.4f}")
        print(f"\n{'='*60}\n")


if __name__ == "__main__":
    main()
