"""Execution driver for target-based data pipelines."""

__version__ = "0.1.0"
