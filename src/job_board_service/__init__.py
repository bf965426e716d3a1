"""Job board service: job lifecycle and escrow payment engine."""

__version__ = "0.1.0"
