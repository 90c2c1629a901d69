"""
Aggregator task for collective (reduce/broadcast) training.

Each reduce round yields one contribution per worker. Rounds with real
gradients produce a parameter update that is broadcast back to every worker.
A round in which every worker only sent a dummy push closes the logical
iteration: the aggregator broadcasts an empty parameter array, pools the
validation stats of the iteration and moves on to the next one.
"""

import logging
from typing import List, Optional, Tuple

from communication.collectives import BroadcastSender, ReduceReceiver
from communication.serialization import (
    decode_gradient_contribution,
    decode_validation_stats_pair,
    encode_layer_parameters,
)
from core.config import NetworkConfig
from core.layer_parameter import LayerParameter, apply_update
from core.network import initial_parameters
from core.validator import ValidationStats, generate_iteration_log
from coordinator.aggregation import reduce_gradient_contributions, reduce_validation_stats

logger = logging.getLogger(__name__)


class GroupCommParameterServer:
    """
    Owns the model parameters and folds worker gradients into them.
    """

    def __init__(
        self,
        config: NetworkConfig,
        gradient_receiver: ReduceReceiver,
        validation_receiver: ReduceReceiver,
        parameter_sender: BroadcastSender,
        parameters: Optional[List[LayerParameter]] = None
    ):
        """
        Initialize parameter server.

        Args:
            config: Network configuration shared with the workers
            gradient_receiver: Root end of the gradient reduce
            validation_receiver: Root end of the validation stats reduce
            parameter_sender: Root end of the parameter broadcast
            parameters: Starting parameters (defaults to the seeded initial values)
        """
        self.config = config
        self.gradient_receiver = gradient_receiver
        self.validation_receiver = validation_receiver
        self.parameter_sender = parameter_sender
        self.parameters = parameters if parameters is not None else initial_parameters(config)

        self.iteration = 0
        self.num_updates = 0
        self.num_sentinels = 0
        self.history: List[Tuple[ValidationStats, ValidationStats]] = []

    def run(self) -> List[Tuple[ValidationStats, ValidationStats]]:
        """
        Serve reduce rounds until ``max_iterations`` iterations are complete.

        Returns:
            Pooled (training, cross validation) stats of every iteration
        """
        logger.info(f"Parameter server started: {self.config.max_iterations} iterations")

        while self.iteration < self.config.max_iterations:
            self.step()

        logger.info(
            f"Parameter server finished: {self.iteration} iterations, {self.num_updates} updates"
        )
        return self.history

    def step(self):
        """Serve one reduce round."""
        contributions = [
            decode_gradient_contribution(payload)
            for payload in self.gradient_receiver.receive()
        ]
        count, gradient_sum = reduce_gradient_contributions(contributions)

        if count == 0:
            self._finish_iteration()
            return

        if gradient_sum:
            self.parameters = apply_update(self.parameters, gradient_sum, count, self.config.stepsize)
            self.num_updates += 1
            logger.debug(f"Iteration {self.iteration}: applied update from {count} gradients")
        self.parameter_sender.send(encode_layer_parameters(self.parameters))

    def _finish_iteration(self):
        self.parameter_sender.send(encode_layer_parameters([]))
        self.num_sentinels += 1

        pairs = [
            decode_validation_stats_pair(payload)
            for payload in self.validation_receiver.receive()
        ]
        training, cross_validation = reduce_validation_stats(pairs)
        self.history.append((training, cross_validation))
        logger.info(generate_iteration_log(training, cross_validation, self.iteration))

        self.iteration += 1
