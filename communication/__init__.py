"""
Communication module for synchronous distributed training.

Provides the wire format and the collective operations used between workers
and the aggregator:
- Reduce: Collect one contribution from every worker at the aggregator
- Broadcast: Send the aggregator's parameters to every worker
"""

from communication.collectives import CommunicationGroup
from communication.serialization import encode_layer_parameters, decode_layer_parameters

__version__ = "0.1.0"

__all__ = [
    "CommunicationGroup",
    "encode_layer_parameters",
    "decode_layer_parameters",
]
