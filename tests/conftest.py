"""Shared fixtures for the FundTrack test suite."""

import pytest
from algosdk import account

from contracts.milestone_escrow.contract import MilestoneEscrow
from oracle.identity import OracleIdentity


def new_address() -> str:
    """Address of a fresh random account."""
    _, address = account.generate_account()
    return address


class FakeClock:
    """Deterministic clock returning Unix seconds."""

    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oracle_identity() -> OracleIdentity:
    return OracleIdentity.generate()


@pytest.fixture
def oracle(oracle_identity) -> str:
    return oracle_identity.address


@pytest.fixture
def creator() -> str:
    return new_address()


@pytest.fixture
def funder() -> str:
    return new_address()


@pytest.fixture
def escrow(oracle, clock) -> MilestoneEscrow:
    """In-memory escrow with the oracle fixture as its oracle."""
    return MilestoneEscrow.deploy(oracle, clock=clock)
