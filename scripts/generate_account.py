"""
Account Generator Script for FundTrack

Creates Algorand accounts for the FundTrack roles: the oracle that verifies
milestones, project creators and funders. Prints the address and the 25-word
mnemonic to put in the .env file.

Usage:
    python -m scripts.generate_account --role oracle
    python -m scripts.generate_account --role creator --count 3
    python -m scripts.generate_account --check
"""

import os
import argparse
from dotenv import load_dotenv
from algosdk import account, mnemonic

from oracle.errors import ConfigurationError
from oracle.identity import OracleIdentity

load_dotenv()

ROLES = ("oracle", "creator", "funder")


def generate_standalone_account() -> tuple[str, str]:
    """
    Generate a new account.

    Returns:
        Tuple of (address, mnemonic_phrase)
    """
    private_key, address = account.generate_account()
    mnemonic_phrase = mnemonic.from_private_key(private_key)
    return address, mnemonic_phrase


def check_oracle_mnemonic() -> bool:
    """Check that ORACLE_MNEMONIC in the environment is a usable identity."""
    phrase = os.getenv("ORACLE_MNEMONIC")
    if not phrase:
        print("❌ ORACLE_MNEMONIC not set in environment")
        return False

    try:
        identity = OracleIdentity.from_mnemonic(phrase)
    except ConfigurationError as e:
        print(f"❌ {e}")
        return False

    print(f"✅ ORACLE_MNEMONIC is valid")
    print(f"   Oracle address: {identity.address}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Generate accounts for FundTrack")
    parser.add_argument(
        "--role",
        choices=ROLES,
        default="oracle",
        help="Role the account is for"
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of accounts to generate"
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only validate ORACLE_MNEMONIC from the environment"
    )

    args = parser.parse_args()

    print("\n🌱 FundTrack - Account Generator\n")
    print("=" * 50)

    if args.check:
        ok = check_oracle_mnemonic()
        print("\n" + "=" * 50)
        raise SystemExit(0 if ok else 1)

    for i in range(args.count):
        print(f"\n📝 Generating {args.role} account {i + 1}/{args.count}...")
        address, mnemonic_phrase = generate_standalone_account()

        print(f"\n✅ Account Generated!")
        print(f"   Address: {address}")
        print(f"\n⚠️  SAVE THIS MNEMONIC (never share it!):")
        print(f"   {mnemonic_phrase}")

        if args.role == "oracle":
            print(f"\n📋 Add to .env file:")
            print(f"   ORACLE_MNEMONIC={mnemonic_phrase}")

    print("\n" + "=" * 50)
    print("Done!\n")


if __name__ == "__main__":
    main()
