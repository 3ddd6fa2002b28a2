"""Escrow Guard - risk-routed payments with on-chain escrow and an off-chain mirror."""

__version__ = "0.1.0"
