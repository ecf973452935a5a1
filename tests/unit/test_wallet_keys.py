import sys
from dataclasses import replace
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from ark_wallet_config import ArkWalletConfigError  # noqa: E402
from wallet_errors import DerivationExhausted  # noqa: E402
from wallet_keys import (  # noqa: E402
    MAX_DERIVATION_INDEX,
    KeyDeriver,
    SeedCipher,
    generate_mnemonic,
    seed_from_mnemonic,
)

# BIP84 reference mnemonic.
MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon about"
)


def test_generated_mnemonic_has_24_words():
    words = generate_mnemonic().split()
    assert len(words) == 24
    assert len(seed_from_mnemonic(" ".join(words))) == 64


def test_invalid_mnemonic_is_rejected():
    with pytest.raises(ArkWalletConfigError):
        seed_from_mnemonic("not a real seed phrase at all")


def test_seed_cipher_round_trip_and_wrong_password():
    seed = seed_from_mnemonic(MNEMONIC)
    blob = SeedCipher("pw", iterations=1_000).encrypt(seed)

    assert seed.hex() not in blob
    assert SeedCipher("pw", iterations=1_000).decrypt(blob) == seed
    with pytest.raises(ArkWalletConfigError):
        SeedCipher("other", iterations=1_000).decrypt(blob)


def test_onchain_address_matches_bip84_vector(config):
    mainnet = replace(config, network="mainnet")
    seed = seed_from_mnemonic(MNEMONIC)

    assert (
        KeyDeriver(mainnet).onchain_address(seed, 0)
        == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
    )


def test_testnet_chains_are_independent(config):
    deriver = KeyDeriver(config)
    seed = seed_from_mnemonic(MNEMONIC)

    a0 = deriver.onchain_address(seed, 0)
    a1 = deriver.onchain_address(seed, 1)
    ark0 = deriver.offchain_address(seed, 0, bytes.fromhex("ab" * 32))

    assert a0.startswith("tb1q") and a1.startswith("tb1q") and a0 != a1
    assert ark0.startswith("tark1")
    assert len(deriver.offchain_pubkey(seed, 0)) == 32
    assert deriver.onchain_wif(seed, 0)[0] in "cn9"


def test_index_out_of_range_is_exhausted(config):
    deriver = KeyDeriver(config)
    seed = seed_from_mnemonic(MNEMONIC)
    with pytest.raises(DerivationExhausted):
        deriver.onchain_address(seed, MAX_DERIVATION_INDEX + 1)
    with pytest.raises(DerivationExhausted):
        deriver.offchain_pubkey(seed, -1)
