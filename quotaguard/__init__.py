"""quotaguard: distributed admission control engine."""

__version__ = "0.1.0"
