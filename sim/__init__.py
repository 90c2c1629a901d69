"""
Single-machine simulation of collective synchronous training.

Runs the aggregator and the workers as threads or processes connected by
in-memory channels.
"""

__version__ = "0.1.0"
