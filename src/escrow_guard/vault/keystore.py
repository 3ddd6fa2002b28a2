"""Two-factor envelope encryption for custodial private keys.

The symmetric key is ``scrypt(sha256_hex(master_key + password_hash))``, so
the stored ciphertext is unrecoverable without both the process-wide
master key and the user's password hash.

Decrypted key material must never reach a log line or exception message.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from escrow_guard.errors import DecryptionError, KeyMismatchError, ValidationError

logger = logging.getLogger("escrow_guard.vault.keystore")

DEFAULT_MASTER_KEY = "default-key-change-in-production"

# Fixed KDF parameters; changing any of them orphans every stored key.
_KDF_SALT = b"salt"
_KDF_N = 2**14
_KDF_R = 8
_KDF_P = 1
_KEY_LENGTH = 32
_IV_LENGTH = 16

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class WalletCredential:
    """Public address plus the ``iv_hex:ciphertext_hex`` encrypted key."""

    address: str
    encrypted_key: str


class KeyVault:
    """Encrypts and decrypts custodial private keys.

    Parameters
    ----------
    master_key:
        Process-wide secret mixed into every derived key. ``None`` falls
        back to a placeholder and logs a warning.
    """

    def __init__(self, master_key: str | None = None) -> None:
        if not master_key:
            master_key = DEFAULT_MASTER_KEY
        if master_key == DEFAULT_MASTER_KEY:
            logger.warning("Using default encryption key. Set ENCRYPTION_KEY in production!")
        self._master_key = master_key

    def __repr__(self) -> str:
        return "KeyVault(master_key=***)"

    def _derive_key(self, password_hash: str) -> bytes:
        combined = hashlib.sha256((self._master_key + password_hash).encode("utf-8")).hexdigest()
        kdf = Scrypt(salt=_KDF_SALT, length=_KEY_LENGTH, n=_KDF_N, r=_KDF_R, p=_KDF_P)
        return kdf.derive(combined.encode("utf-8"))

    # ------------------------------------------------------------------
    # Wallet lifecycle
    # ------------------------------------------------------------------

    def create_wallet(self, password_hash: str) -> WalletCredential:
        """Generate a new keypair and return its encrypted credential."""
        acct = Account.create()
        encrypted = self.encrypt(acct.key.to_0x_hex(), password_hash)
        logger.info(f"Created new wallet: {acct.address}")
        return WalletCredential(address=acct.address, encrypted_key=encrypted)

    def encrypt(self, private_key: str, password_hash: str) -> str:
        """Encrypt *private_key* and return ``iv_hex:ciphertext_hex``."""
        if not password_hash:
            raise ValidationError("Password hash is required for encryption")
        if not private_key:
            raise ValidationError("Private key is required")

        key = self._derive_key(password_hash)
        iv = os.urandom(_IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(private_key.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted_key: str, password_hash: str) -> str:
        """Decrypt an ``iv:ciphertext`` credential.

        Raises
        ------
        ValidationError
            If the input is not well-formed.
        DecryptionError
            If the ciphertext is not a whole number of AES blocks.
        KeyMismatchError
            If the cipher rejects the ciphertext: wrong password hash or a
            rotated master key.
        """
        iv, ciphertext = _split_encrypted_key(encrypted_key)
        if not password_hash or not isinstance(password_hash, str):
            raise ValidationError("Password hash is required for decryption")
        if len(ciphertext) % (algorithms.AES.block_size // 8):
            logger.error(f"Encrypted data is {len(ciphertext)} bytes, not a multiple of the block size")
            raise DecryptionError("Encrypted private key is corrupt (truncated ciphertext)")

        key = self._derive_key(password_hash)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        try:
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            logger.error(
                "Decryption failed - ENCRYPTION_KEY may have changed or password hash mismatch "
                f"(password hash length {len(password_hash)}, ciphertext length {len(ciphertext)})"
            )
            raise KeyMismatchError(
                "Failed to decrypt private key - ENCRYPTION_KEY may have changed "
                "or password hash mismatch"
            ) from None

        if not plaintext:
            raise DecryptionError("Decryption resulted in empty private key")
        if not _PRIVATE_KEY_RE.match(plaintext):
            logger.warning(
                "Decrypted key format may be invalid. Expected 66-char hex string "
                f"starting with 0x, got {len(plaintext)} chars"
            )
        return plaintext

    def get_account(self, encrypted_key: str, password_hash: str) -> LocalAccount:
        """Decrypt and load the signing account."""
        private_key = self.decrypt(encrypted_key, password_hash)
        try:
            return Account.from_key(private_key)
        except Exception:
            logger.error(f"Failed to create wallet from decrypted key ({len(private_key)} chars)")
            raise DecryptionError("Decrypted private key is invalid - key may be corrupted") from None

    @staticmethod
    def is_valid_address(address: str) -> bool:
        try:
            return Web3.is_address(address)
        except Exception:
            return False


def _split_encrypted_key(encrypted_key: str) -> tuple[bytes, bytes]:
    """Validate the ``iv:ciphertext`` envelope and return the raw parts."""
    if not encrypted_key or not isinstance(encrypted_key, str):
        raise ValidationError("Encrypted private key is required and must be a string")

    parts = encrypted_key.split(":")
    if len(parts) != 2:
        logger.error(f"Invalid encrypted key format: expected 2 parts, got {len(parts)}")
        raise ValidationError('Invalid encrypted private key format - expected "iv:encrypted" format')

    iv_hex, data_hex = parts
    if len(iv_hex) != _IV_LENGTH * 2 or not _HEX_RE.match(iv_hex):
        logger.error(f"Invalid IV format. IV must be 32 hex characters, got: {len(iv_hex)} chars")
        raise ValidationError("Invalid IV format in encrypted private key")
    if not data_hex or len(data_hex) % 2 or not _HEX_RE.match(data_hex):
        logger.error(f"Invalid encrypted data format, got: {len(data_hex)} chars")
        raise ValidationError("Invalid encrypted data format in private key")

    return bytes.fromhex(iv_hex), bytes.fromhex(data_hex)
