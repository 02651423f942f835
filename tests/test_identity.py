"""
Tests for the oracle identity

Tests cover:
- Loading from a mnemonic
- Signing and verifying attestations
"""

import pytest

from oracle.errors import ConfigurationError
from oracle.identity import Attestation, OracleIdentity, verify_attestation
from conftest import new_address


@pytest.fixture
def attestation():
    return Attestation(
        project_id=3,
        milestone_index=1,
        verified=True,
        evidence_reference="https://imagery.example.com/imagery?lat=1&lon=2",
        timestamp=1_700_000_000,
    )


class TestOracleIdentity:
    """Test suite for OracleIdentity."""

    def test_mnemonic_round_trip(self, oracle_identity):
        """Test an identity reloads from its own mnemonic."""
        # Act
        loaded = OracleIdentity.from_mnemonic(oracle_identity.mnemonic)

        # Assert
        assert loaded.address == oracle_identity.address
        assert len(oracle_identity.mnemonic.split()) == 25

    @pytest.mark.parametrize("phrase", ["", "abandon " * 3, "not a mnemonic at all"])
    def test_invalid_mnemonic(self, phrase):
        """Test a bad mnemonic raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="ORACLE_MNEMONIC"):
            OracleIdentity.from_mnemonic(phrase)

    def test_sign_and_verify(self, oracle_identity, attestation):
        """Test a signature verifies against the signer only."""
        # Act
        signature = oracle_identity.sign(attestation)

        # Assert
        assert verify_attestation(attestation, signature, oracle_identity.address)
        assert not verify_attestation(attestation, signature, new_address())

    def test_tampered_attestation_fails(self, oracle_identity, attestation):
        """Test changing any field invalidates the signature."""
        # Arrange
        signature = oracle_identity.sign(attestation)
        tampered = Attestation(
            project_id=attestation.project_id,
            milestone_index=attestation.milestone_index,
            verified=False,
            evidence_reference=attestation.evidence_reference,
            timestamp=attestation.timestamp,
        )

        # Act & Assert
        assert not verify_attestation(tampered, signature, oracle_identity.address)

    def test_repr_hides_key(self, oracle_identity):
        """Test repr shows only the address."""
        assert repr(oracle_identity) == f"OracleIdentity({oracle_identity.address})"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
