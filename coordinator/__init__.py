"""
Aggregator side of distributed training.

The aggregator is responsible for:
- Owning the model parameters
- Folding worker gradients into parameter updates
- Closing iterations and pooling validation statistics
- Serving parameters over HTTP for the key-value strategy
"""

__version__ = "0.1.0"
