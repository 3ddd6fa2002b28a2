"""Escrow lifecycle: the mirror state machine and the chain-authoritative ledger."""
