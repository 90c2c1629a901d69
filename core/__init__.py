"""
Neural network core: layers, networks, configuration and validation.
"""

__version__ = "0.1.0"
