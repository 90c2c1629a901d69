"""
Worker module for distributed training.

Workers are the compute nodes that:
- Hold a partition of the training data
- Execute forward/backward passes
- Push gradients to and pull parameters from a parameter store
- Report validation statistics to the aggregator
"""

__version__ = "0.1.0"
