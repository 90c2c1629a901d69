"""
Worker configuration.

Defines the per-process settings of a training worker. The network itself
is described by ``core.config.NetworkConfig``, which every worker shares.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Any
import json


@dataclass
class WorkerConfig:
    """
    Configuration of one worker process.

    This includes identity, parameter server connection and pull retries.
    """

    # Identity
    rank: int = 0
    world_size: int = 1

    # Remote parameter server connection
    parameter_server_url: str = "http://localhost:8000"
    request_timeout: float = 30.0  # seconds
    pull_retry_count: int = 3
    pull_retry_delay: float = 0.5  # seconds, doubled after every failed pull

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    def __post_init__(self):
        """Validate settings."""
        if self.world_size <= 0:
            raise ValueError(f"world_size must be positive, got {self.world_size}")
        if not 0 <= self.rank < self.world_size:
            raise ValueError(f"rank must be in [0, {self.world_size}), got {self.rank}")
        if self.pull_retry_count <= 0:
            raise ValueError(f"pull_retry_count must be positive, got {self.pull_retry_count}")

    @property
    def worker_id(self) -> str:
        return f"worker_{self.rank}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'WorkerConfig':
        """Create a config from a dictionary, validating every field."""
        return cls(**config_dict)

    @classmethod
    def from_json_file(cls, path: str) -> 'WorkerConfig':
        """
        Load a worker config saved with ``to_json_file``.

        Raises:
            ValueError: If a setting is invalid
        """
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    def to_json_file(self, path: str):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        return (
            f"WorkerConfig(worker_id={self.worker_id}, world_size={self.world_size}, "
            f"parameter_server_url={self.parameter_server_url})"
        )
