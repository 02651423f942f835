"""
Oracle account and attestation signing.

The oracle identity is an Algorand account loaded from its 25-word mnemonic.
Its address is the identity the escrow authorizes; its key signs every
verification attestation the oracle records, so an audit record can later be
checked against the oracle address that produced it.
"""

import json
from dataclasses import asdict, dataclass

from algosdk import account, error, mnemonic, util

from oracle.errors import ConfigurationError


@dataclass(frozen=True)
class Attestation:
    """The oracle's claim about one milestone at one point in time."""

    project_id: int
    milestone_index: int
    verified: bool
    evidence_reference: str
    timestamp: int

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":")).encode()


class OracleIdentity:
    """
    Signing identity of the oracle.

    Args:
        private_key: Base64 Algorand private key
    """

    def __init__(self, private_key: str):
        self._private_key = private_key
        self.address = account.address_from_private_key(private_key)

    def __repr__(self) -> str:
        return f"OracleIdentity({self.address})"

    @classmethod
    def from_mnemonic(cls, phrase: str) -> "OracleIdentity":
        """
        Load the identity from a mnemonic.

        Raises:
            ConfigurationError: The phrase is not a valid Algorand mnemonic
        """
        try:
            private_key = mnemonic.to_private_key(phrase)
        except (KeyError, ValueError, error.WrongMnemonicLengthError, error.WrongChecksumError) as exc:
            raise ConfigurationError("ORACLE_MNEMONIC is not a valid Algorand mnemonic") from exc
        return cls(private_key)

    @classmethod
    def generate(cls) -> "OracleIdentity":
        private_key, _ = account.generate_account()
        return cls(private_key)

    @property
    def mnemonic(self) -> str:
        return mnemonic.from_private_key(self._private_key)

    def sign(self, attestation: Attestation) -> str:
        """
        Sign an attestation.

        Returns:
            Base64 signature
        """
        return util.sign_bytes(attestation.to_bytes(), self._private_key)


def verify_attestation(attestation: Attestation, signature: str, address: str) -> bool:
    """Check that ``address`` signed ``attestation``."""
    return util.verify_bytes(attestation.to_bytes(), signature, address)
