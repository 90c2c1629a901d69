"""
Remote worker entry point.

Trains one shard of a synthetic dataset against a running key-value
parameter server. Every worker builds the same dataset from the shared seed
and keeps the samples of its rank.
"""

import argparse
import logging
from typing import Optional

from core.config import NetworkConfig, get_shape_length
from core.dataset import create_dummy_dataset
from core.network import build_layers
from worker.config import WorkerConfig
from worker.trainer import ParameterServerWorker, run_remote_worker


def main(args: Optional[list] = None) -> ParameterServerWorker:
    parser = argparse.ArgumentParser(description="Parameter Server Worker")
    parser.add_argument("--network-config", type=str, required=True, help="Path to the network config JSON file")
    parser.add_argument("--worker-config", type=str, default=None, help="Path to the worker config JSON file")
    parser.add_argument("--rank", type=int, default=None, help="Override the worker rank")
    parser.add_argument("--world-size", type=int, default=None, help="Override the number of workers")
    parser.add_argument("--server-url", type=str, default=None, help="Override the parameter server URL")
    parser.add_argument("--samples", type=int, default=400, help="Number of synthetic samples in the full dataset")
    parser.add_argument("--seed", type=int, default=42, help="Dataset seed shared by all workers")
    parsed = parser.parse_args(args)

    worker_config = WorkerConfig.from_json_file(parsed.worker_config) if parsed.worker_config else WorkerConfig()
    overrides = {
        "rank": parsed.rank,
        "world_size": parsed.world_size,
        "parameter_server_url": parsed.server_url,
    }
    settings = worker_config.to_dict()
    settings.update({key: value for key, value in overrides.items() if value is not None})
    worker_config = WorkerConfig.from_dict(settings)

    logging.basicConfig(
        level=getattr(logging, worker_config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = NetworkConfig.from_json_file(parsed.network_config)
    dataset = create_dummy_dataset(
        parsed.samples,
        get_shape_length(config.input_dims),
        build_layers(config)[-1].num_output,
        seed=parsed.seed
    )
    return run_remote_worker(config, worker_config, dataset)


if __name__ == "__main__":
    main()
