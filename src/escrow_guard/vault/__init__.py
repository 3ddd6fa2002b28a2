"""Envelope encryption for custodial wallet keys."""

from escrow_guard.vault.keystore import KeyVault, WalletCredential

__all__ = ["KeyVault", "WalletCredential"]
