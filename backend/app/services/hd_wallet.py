"""
HD deposit-address derivation.

Solana: SLIP-0010 ed25519, path m/44'/501'/{index}'/0' (all levels hardened).
TRON:   BIP32 secp256k1, path from TRON_DERIVATION_PATH_TEMPLATE
        (default m/44'/195'/{index}'/0'/0').

Only addresses are ever persisted. Signing keys are returned to the sweep
service for immediate use and must not be logged or stored.
"""
import logging
from dataclasses import dataclass, field

from bip_utils import (
    Bip32KeyError,
    Bip32PathError,
    Bip32Slip10Ed25519,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
)
from eth_account import Account
from solders.keypair import Keypair
from tronpy.keys import PrivateKey

from app.config import settings
from app.core.errors import ConfigurationError, DerivationError, ValidationError

logger = logging.getLogger(__name__)

Account.enable_unaudited_hdwallet_features()

SOLANA = "solana"
TRON = "tron"
SUPPORTED_CHAINS = (SOLANA, TRON)

SECP256K1_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)


@dataclass(frozen=True)
class DerivedAddress:
    blockchain: str
    index: int
    address: str
    path: str


@dataclass(frozen=True)
class SigningKey:
    blockchain: str
    index: int
    address: str
    # raw 32-byte secret, kept out of repr so it cannot leak through logging
    secret: bytes = field(repr=False)

    def solana_keypair(self) -> Keypair:
        return Keypair.from_seed(self.secret)

    def tron_private_key(self) -> PrivateKey:
        return PrivateKey(self.secret)


def validate_index(index) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise ValidationError("Index must be a non-negative integer")
    return index


def _mnemonic_for(blockchain: str) -> str:
    if blockchain == SOLANA:
        phrase = settings.solana_mnemonic
        label = "Solana"
    elif blockchain == TRON:
        phrase = settings.TRON_DEPOSIT_MNEMONIC.strip()
        label = "TRON"
    else:
        raise ValidationError(f"Unsupported blockchain: {blockchain}")

    if not phrase:
        raise ConfigurationError(f"{label} deposit wallet is not configured")
    if not Bip39MnemonicValidator().IsValid(phrase):
        raise ConfigurationError(f"{label} deposit wallet phrase is invalid")
    return phrase


# ---------------------------------------------------------------------------
# Solana (SLIP-0010 ed25519)
# ---------------------------------------------------------------------------

def solana_path(index: int) -> str:
    return f"m/44'/501'/{index}'/0'"


def _solana_secret(index: int) -> tuple[bytes, str]:
    phrase = _mnemonic_for(SOLANA)
    path = solana_path(index)
    try:
        seed = Bip39SeedGenerator(phrase).Generate()
        node = Bip32Slip10Ed25519.FromSeed(seed).DerivePath(path)
        secret = node.PrivateKey().Raw().ToBytes()
    except (Bip32KeyError, Bip32PathError, ValueError, TypeError) as e:
        raise DerivationError(f"Solana derivation failed for index {index}: {type(e).__name__}") from None
    if len(secret) != 32:
        raise DerivationError(f"Solana derivation produced an invalid key for index {index}")
    return secret, path


# ---------------------------------------------------------------------------
# TRON (BIP32 secp256k1)
# ---------------------------------------------------------------------------

def tron_path(index: int) -> str:
    template = settings.TRON_DERIVATION_PATH_TEMPLATE or "m/44'/195'/{index}'/0'/0'"
    return template.replace("{index}", str(index))


def _tron_secret(index: int) -> tuple[bytes, str]:
    phrase = _mnemonic_for(TRON)
    path = tron_path(index)
    try:
        account = Account.from_mnemonic(phrase, account_path=path)
        secret = bytes(account.key)
    except (ValueError, TypeError) as e:
        raise DerivationError(f"TRON derivation failed for index {index}: {type(e).__name__}") from None

    as_int = int.from_bytes(secret, "big")
    if len(secret) != 32 or as_int == 0 or as_int >= SECP256K1_ORDER:
        raise DerivationError(f"TRON derivation produced an out-of-range key for index {index}")
    return secret, path


def _tron_address(secret: bytes, index: int) -> str:
    address = PrivateKey(secret).public_key.to_base58check_address()
    if not address.startswith("T") or len(address) != 34:
        raise DerivationError(f"TRON derivation produced a malformed address for index {index}")
    return address


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def derive_address(blockchain: str, index: int) -> DerivedAddress:
    """Deterministically derive the deposit address for (blockchain, index)."""
    validate_index(index)
    if blockchain == SOLANA:
        secret, path = _solana_secret(index)
        address = str(Keypair.from_seed(secret).pubkey())
    elif blockchain == TRON:
        secret, path = _tron_secret(index)
        address = _tron_address(secret, index)
    else:
        raise ValidationError(f"Unsupported blockchain: {blockchain}")
    return DerivedAddress(blockchain=blockchain, index=index, address=address, path=path)


def derive_signing_key(blockchain: str, index: int) -> SigningKey:
    """Materialise the signing key for a deposit address. Callers must not persist it."""
    validate_index(index)
    if blockchain == SOLANA:
        secret, _ = _solana_secret(index)
        address = str(Keypair.from_seed(secret).pubkey())
    elif blockchain == TRON:
        secret, _ = _tron_secret(index)
        address = _tron_address(secret, index)
    else:
        raise ValidationError(f"Unsupported blockchain: {blockchain}")
    logger.info("[hd-wallet] signing key materialised for %s index %d", blockchain, index)
    return SigningKey(blockchain=blockchain, index=index, address=address, secret=secret)
