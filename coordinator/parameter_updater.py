"""
Update rules of the remote key-value parameter server.

Two keys are served:

- ``WHOLE_MODEL``: the full parameter array. Workers push batches of
  gradient arrays; the server averages every pending gradient array, scales
  it by the step size and subtracts the result from the stored parameters.
- ``VALIDATION``: a (training, cross validation) stats pair. Pushed pairs
  are summed and logged once enough training samples have been counted.
"""

import logging
from typing import Any, List, Optional

from core.config import NetworkConfig
from core.layer_parameter import LayerParameter, sum_parameters
from core.network import initial_parameters
from core.validator import ValidationStats, generate_iteration_log

logger = logging.getLogger(__name__)


WHOLE_MODEL = "WHOLE_MODEL"
VALIDATION = "VALIDATION"
KEYS = (WHOLE_MODEL, VALIDATION)


class NeuralNetworkParameterUpdater:
    """
    Initial values, delta computation and update rule per key.
    """

    def __init__(self, config: NetworkConfig, log_period: int = 1):
        """
        Args:
            config: Network configuration shared with the workers
            log_period: Minimum number of training samples counted before
                the pooled validation stats are logged and reset

        Raises:
            ValueError: If log_period is not positive
        """
        if log_period <= 0:
            raise ValueError(f"Log period is too small: {log_period}")

        self.config = config
        self.stepsize = config.stepsize
        self.log_period = log_period
        self.iteration = 0
        self.history: List[tuple] = []

    def init_value(self, key: str) -> Any:
        if key == WHOLE_MODEL:
            return initial_parameters(self.config)
        if key == VALIDATION:
            return ValidationStats(), ValidationStats()
        raise RuntimeError(f"Unexpected key: {key}")

    def process(self, key: str, value: Any) -> Optional[Any]:
        """
        Turn pushed data into a delta for ``update``.

        For ``WHOLE_MODEL`` the value is a list of gradient arrays; empty
        arrays are dropped and the rest are averaged and scaled by the step
        size. Returns None when nothing remains.
        """
        if key == VALIDATION:
            return value
        if key != WHOLE_MODEL:
            raise RuntimeError(f"Unexpected key: {key}")

        gradients_list = [gradients for gradients in value if gradients]
        if not gradients_list:
            return None

        total = gradients_list[0]
        for gradients in gradients_list[1:]:
            total = sum_parameters(total, gradients)

        factor = self.stepsize / len(gradients_list)
        return [
            LayerParameter(weight=gradient.weight * factor, bias=gradient.bias * factor)
            for gradient in total
        ]

    def update(self, key: str, old_value: Any, delta: Any) -> Any:
        if key == WHOLE_MODEL:
            return self._update_parameters(old_value, delta)
        if key == VALIDATION:
            return self._update_validation_stats(old_value, delta)
        raise RuntimeError(f"Unexpected key: {key}")

    def _update_parameters(
        self,
        parameters: List[LayerParameter],
        delta: List[LayerParameter]
    ) -> List[LayerParameter]:
        if len(parameters) != len(delta):
            raise RuntimeError(
                f"The number of parameter gradients ({len(delta)}) is not equal to "
                f"the number of layers ({len(parameters)})"
            )
        return [
            parameter if parameter.is_empty() else LayerParameter(
                weight=parameter.weight - change.weight.to(parameter.weight.dtype),
                bias=parameter.bias - change.bias.to(parameter.bias.dtype)
            )
            for parameter, change in zip(parameters, delta)
        ]

    def _update_validation_stats(self, old_pair, delta_pair):
        training = old_pair[0] + delta_pair[0]
        cross_validation = old_pair[1] + delta_pair[1]

        if training.total_num >= self.log_period:
            logger.info(generate_iteration_log(training, cross_validation, self.iteration))
            self.history.append((training.copy(), cross_validation.copy()))
            self.iteration += 1
            training.reset()
            cross_validation.reset()

        return training, cross_validation
