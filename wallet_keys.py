"""
Wallet key material: BIP-39 seeds, encryption at rest, and derivation of
the on-chain (BIP84 P2WPKH) and off-chain (BIP86 x-only) key chains.

Derivation itself is delegated to bip_utils; this module only picks paths
and encodes the results.
"""

from __future__ import annotations

import base64
import os

from bip_utils import (
    Bech32Encoder,
    Bip32KeyError,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
    Bip44Changes,
    Bip84,
    Bip84Coins,
    Bip86,
    Bip86Coins,
    P2WPKHAddrEncoder,
)
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ark_wallet_config import ArkWalletConfig, ArkWalletConfigError
from wallet_errors import DerivationExhausted

# Highest non-hardened BIP32 child index.
MAX_DERIVATION_INDEX = 2**31 - 1

ARK_ADDRESS_VERSION = 0


def generate_mnemonic() -> str:
    return Bip39MnemonicGenerator().FromWordsNumber(Bip39WordsNum.WORDS_NUM_24).ToStr()


def seed_from_mnemonic(mnemonic: str, passphrase: str = "") -> bytes:
    try:
        Bip39MnemonicValidator().Validate(mnemonic)
    except Exception as exc:  # noqa: BLE001
        raise ArkWalletConfigError(
            "Mnemonic is not a valid BIP-39 seed phrase. Double-check words and spacing."
        ) from exc
    return Bip39SeedGenerator(mnemonic).Generate(passphrase)


class SeedCipher:
    """
    Encrypts seeds with Fernet under a PBKDF2-derived key.

    Each blob carries its own random salt: "<salt b64>$<fernet token>".
    """

    def __init__(self, password: str, iterations: int = 200_000) -> None:
        self._password = password.encode("utf-8")
        self._iterations = iterations

    def _fernet(self, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._iterations,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(self._password)))

    def encrypt(self, seed: bytes) -> str:
        salt = os.urandom(16)
        token = self._fernet(salt).encrypt(seed)
        return f"{base64.b64encode(salt).decode()}${token.decode()}"

    def decrypt(self, blob: str) -> bytes:
        try:
            salt_b64, token = blob.split("$", 1)
            return self._fernet(base64.b64decode(salt_b64)).decrypt(token.encode())
        except (ValueError, InvalidToken) as exc:
            raise ArkWalletConfigError(
                "Unable to decrypt wallet seed. Check ARK_SEED_PASSWORD."
            ) from exc


class KeyDeriver:
    """
    Derives addresses and keys for one network.

    - on-chain:  m/84'/coin'/0'/0/i  (P2WPKH)
    - off-chain: m/86'/coin'/0'/0/i  (x-only key inside an Ark address)
    - identity:  m/86'/coin'/0'/1/0  (public key handed to the server for boarding)
    """

    def __init__(self, config: ArkWalletConfig) -> None:
        self.network = config.network
        self.segwit_hrp = config.segwit_hrp
        self.ark_hrp = config.ark_hrp
        mainnet = config.network == "mainnet"
        self._coin84 = Bip84Coins.BITCOIN if mainnet else Bip84Coins.BITCOIN_TESTNET
        self._coin86 = Bip86Coins.BITCOIN if mainnet else Bip86Coins.BITCOIN_TESTNET

    def _bip84(self, seed: bytes, index: int):
        _check_index(index)
        try:
            return (
                Bip84.FromSeed(seed, self._coin84)
                .Purpose()
                .Coin()
                .Account(0)
                .Change(Bip44Changes.CHAIN_EXT)
                .AddressIndex(index)
            )
        except (Bip32KeyError, ValueError) as exc:
            raise DerivationExhausted(f"Cannot derive on-chain key at index {index}: {exc}") from exc

    def _bip86(self, seed: bytes, index: int, change: Bip44Changes = Bip44Changes.CHAIN_EXT):
        _check_index(index)
        try:
            return (
                Bip86.FromSeed(seed, self._coin86)
                .Purpose()
                .Coin()
                .Account(0)
                .Change(change)
                .AddressIndex(index)
            )
        except (Bip32KeyError, ValueError) as exc:
            raise DerivationExhausted(f"Cannot derive off-chain key at index {index}: {exc}") from exc

    def identity_pubkey(self, seed: bytes) -> str:
        ctx = self._bip86(seed, 0, Bip44Changes.CHAIN_INT)
        return ctx.PublicKey().RawCompressed().ToHex()

    def onchain_address(self, seed: bytes, index: int) -> str:
        pub = self._bip84(seed, index).PublicKey().RawCompressed().ToBytes()
        return P2WPKHAddrEncoder.EncodeKey(pub, hrp=self.segwit_hrp)

    def onchain_wif(self, seed: bytes, index: int) -> str:
        return self._bip84(seed, index).PrivateKey().ToWif()

    def offchain_pubkey(self, seed: bytes, index: int) -> bytes:
        # Drop the parity byte: Ark addresses carry x-only keys.
        return self._bip86(seed, index).PublicKey().RawCompressed().ToBytes()[1:]

    def offchain_address(self, seed: bytes, index: int, server_pubkey: bytes) -> str:
        if len(server_pubkey) != 32:
            raise ValueError("Ark server pubkey must be a 32-byte x-only key")
        payload = bytes([ARK_ADDRESS_VERSION]) + server_pubkey + self.offchain_pubkey(seed, index)
        return Bech32Encoder.Encode(self.ark_hrp, payload)


def _check_index(index: int) -> None:
    if index < 0 or index > MAX_DERIVATION_INDEX:
        raise DerivationExhausted(
            f"Derivation index {index} is outside the non-hardened range 0..{MAX_DERIVATION_INDEX}"
        )
