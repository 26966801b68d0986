"""
BIP44/49/84 descriptor templates.

Secret templates take a master extended private key and keep it in the
key map with the full ``purpose'/coin'/0'/keychain/*`` tail; their public
rendering moves the hardened account prefix into the key origin. Public
templates take an account-level extended public key plus the master
fingerprint and produce the same public rendering.
"""

from __future__ import annotations

from loguru import logger

from descwallet.errors import NotDerivableError
from descwallet.models import KeychainKind, Network
from descwallet.wallet.bip32 import ExtendedPrivKey, ExtendedPubKey
from descwallet.wallet.derivation import ChildNumber, DerivationPath, KeyOrigin, parse_fingerprint
from descwallet.wallet.descriptor import Descriptor, ScriptType
from descwallet.wallet.keys import DescriptorPublicKey, DescriptorSecretKey, Wildcard


def coin_type(network: Network) -> int:
    return 0 if network.is_mainnet else 1


def account_path(script_type: ScriptType, network: Network, account: int = 0) -> DerivationPath:
    """``purpose'/coin_type'/account'``"""
    return DerivationPath(
        [
            ChildNumber(script_type.purpose, hardened=True),
            ChildNumber(coin_type(network), hardened=True),
            ChildNumber(account, hardened=True),
        ]
    )


def _keychain_step(keychain: KeychainKind) -> DerivationPath:
    return DerivationPath([ChildNumber(keychain.index)])


def new_private(
    script_type: ScriptType,
    secret_key: DescriptorSecretKey,
    keychain: KeychainKind,
    network: Network,
) -> Descriptor:
    """
    Template descriptor from a master secret key. Only the raw extended key
    is used; origin and trailing path of ``secret_key`` are ignored.

    Raises:
        NotDerivableError: if ``secret_key`` is a single key
        InvalidNetworkError: if the key is encoded for another network
    """
    if not isinstance(secret_key.key, ExtendedPrivKey):
        raise NotDerivableError("Descriptor templates require an extended key")

    path = account_path(script_type, network).extend(_keychain_step(keychain))
    key = DescriptorSecretKey(secret_key.key, None, path, Wildcard.UNHARDENED)
    descriptor = Descriptor(script_type, key.as_public(), key, network)
    descriptor.validate()
    logger.debug(f"Built BIP{script_type.purpose} {keychain.value} descriptor")
    return descriptor


def new_public(
    script_type: ScriptType,
    public_key: DescriptorPublicKey,
    fingerprint: str,
    keychain: KeychainKind,
    network: Network,
) -> Descriptor:
    """
    Template descriptor from an account-level public key. The master
    ``fingerprint`` (8 hex chars) cannot be computed from the account key
    and must be supplied by the holder of the master secret.
    """
    if not isinstance(public_key.key, ExtendedPubKey):
        raise NotDerivableError("Descriptor templates require an extended key")

    origin = KeyOrigin(parse_fingerprint(fingerprint), account_path(script_type, network))
    key = DescriptorPublicKey(public_key.key, origin, _keychain_step(keychain), Wildcard.UNHARDENED)
    descriptor = Descriptor(script_type, key, None, network)
    descriptor.validate()
    return descriptor


def new_bip44(
    secret_key: DescriptorSecretKey, keychain: KeychainKind, network: Network
) -> Descriptor:
    return new_private(ScriptType.PKH, secret_key, keychain, network)


def new_bip44_public(
    public_key: DescriptorPublicKey, fingerprint: str, keychain: KeychainKind, network: Network
) -> Descriptor:
    return new_public(ScriptType.PKH, public_key, fingerprint, keychain, network)


def new_bip49(
    secret_key: DescriptorSecretKey, keychain: KeychainKind, network: Network
) -> Descriptor:
    return new_private(ScriptType.SH_WPKH, secret_key, keychain, network)


def new_bip49_public(
    public_key: DescriptorPublicKey, fingerprint: str, keychain: KeychainKind, network: Network
) -> Descriptor:
    return new_public(ScriptType.SH_WPKH, public_key, fingerprint, keychain, network)


def new_bip84(
    secret_key: DescriptorSecretKey, keychain: KeychainKind, network: Network
) -> Descriptor:
    return new_private(ScriptType.WPKH, secret_key, keychain, network)


def new_bip84_public(
    public_key: DescriptorPublicKey, fingerprint: str, keychain: KeychainKind, network: Network
) -> Descriptor:
    return new_public(ScriptType.WPKH, public_key, fingerprint, keychain, network)
