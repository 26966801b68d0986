"""
descwallet CLI - Generate keys, build descriptors and inspect wallets.
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer
from loguru import logger

from descwallet.config import get_settings
from descwallet.errors import WalletError
from descwallet.models import AddressIndex, KeychainKind, Network

app = typer.Typer(
    name="descwallet",
    help="BIP32 keys and descriptor wallets",
    add_completion=False,
)

TEMPLATES = {"bip44": "PKH", "bip49": "SH_WPKH", "bip84": "WPKH"}


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error(
            "Mnemonic required. Use --mnemonic, --mnemonic-file, or DESCWALLET_MNEMONIC env var"
        )
        raise typer.Exit(1)
    return mnemonic


@app.command()
def generate(
    word_count: int = typer.Option(24, "--words", "-w", help="Number of words (12-24)"),
) -> None:
    """Generate a new BIP39 mnemonic phrase."""
    from descwallet.wallet.mnemonic import Mnemonic

    setup_logging()
    try:
        mnemonic = Mnemonic.new(word_count)
    except WalletError as e:
        logger.error(f"Failed to generate mnemonic: {e}")
        raise typer.Exit(1)

    typer.echo(mnemonic.as_string())


@app.command()
def xprv(
    mnemonic: str = typer.Option(
        None, "--mnemonic", envvar="DESCWALLET_MNEMONIC", help="BIP39 mnemonic"
    ),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    password: str | None = typer.Option(None, "--password", help="BIP39 passphrase"),
    network: Network = typer.Option(Network.TESTNET, "--network", "-n"),
    public: bool = typer.Option(False, "--public", help="Print the public key instead"),
) -> None:
    """Print the master key of a mnemonic as a descriptor key."""
    from descwallet.wallet.keys import DescriptorSecretKey
    from descwallet.wallet.mnemonic import Mnemonic

    setup_logging()
    phrase = _load_mnemonic(mnemonic, mnemonic_file)
    try:
        key = DescriptorSecretKey.new(network, Mnemonic.from_string(phrase), password)
    except WalletError as e:
        logger.error(f"Invalid mnemonic: {e}")
        raise typer.Exit(1)

    typer.echo(key.as_public().as_string() if public else key.as_string())


@app.command()
def derive(
    key: str = typer.Argument(..., help="Descriptor key (xprv/tprv or xpub/tpub)"),
    path: str = typer.Argument(..., help="Derivation path, e.g. m/84h/1h/0h"),
    extend: bool = typer.Option(False, "--extend", help="Append the path instead of deriving"),
) -> None:
    """Derive (or extend) a descriptor key along a path."""
    from descwallet.wallet.derivation import DerivationPath
    from descwallet.wallet.keys import DescriptorPublicKey, DescriptorSecretKey

    setup_logging()
    try:
        parsed_path = DerivationPath.parse(path)
        try:
            parsed: DescriptorSecretKey | DescriptorPublicKey = DescriptorSecretKey.from_string(key)
        except WalletError:
            parsed = DescriptorPublicKey.from_string(key)
        result = parsed.extend(parsed_path) if extend else parsed.derive(parsed_path)
    except WalletError as e:
        logger.error(f"Derivation failed: {e}")
        raise typer.Exit(1)

    typer.echo(result.as_string())


@app.command()
def descriptor(
    mnemonic: str = typer.Option(
        None, "--mnemonic", envvar="DESCWALLET_MNEMONIC", help="BIP39 mnemonic"
    ),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    password: str | None = typer.Option(None, "--password", help="BIP39 passphrase"),
    template: str = typer.Option("bip84", "--template", "-t", help="bip44 | bip49 | bip84"),
    network: Network = typer.Option(Network.TESTNET, "--network", "-n"),
    public: bool = typer.Option(False, "--public", help="Print public descriptors only"),
) -> None:
    """Print the external and internal template descriptors of a mnemonic."""
    from descwallet.wallet.descriptor import ScriptType
    from descwallet.wallet.keys import DescriptorSecretKey
    from descwallet.wallet.mnemonic import Mnemonic
    from descwallet.wallet.templates import new_private

    setup_logging()
    if template not in TEMPLATES:
        logger.error(f"Unknown template {template!r}, expected one of {', '.join(TEMPLATES)}")
        raise typer.Exit(1)

    phrase = _load_mnemonic(mnemonic, mnemonic_file)
    try:
        key = DescriptorSecretKey.new(network, Mnemonic.from_string(phrase), password)
        script_type = ScriptType[TEMPLATES[template]]
        for keychain in KeychainKind:
            desc = new_private(script_type, key, keychain, network)
            text = desc.as_string() if public else desc.as_string_private()
            typer.echo(f"{keychain.value}: {text}")
    except WalletError as e:
        logger.error(f"Failed to build descriptors: {e}")
        raise typer.Exit(1)


@app.command()
def address(
    descriptor: str = typer.Argument(..., help="Output descriptor"),
    network: Network = typer.Option(Network.TESTNET, "--network", "-n"),
    count: int = typer.Option(1, "--count", "-c", min=1, help="Number of addresses"),
) -> None:
    """Print the first addresses of a descriptor."""
    from descwallet.wallet.descriptor import Descriptor

    setup_logging()
    try:
        desc = Descriptor.new(descriptor, network)
        last = count if desc.has_wildcard else 1
        for index in range(last):
            typer.echo(f"{index}: {desc.address_at(index)}")
    except WalletError as e:
        logger.error(f"Invalid descriptor: {e}")
        raise typer.Exit(1)


@app.command()
def balance(
    descriptor: str = typer.Argument(..., help="External descriptor"),
    change_descriptor: str | None = typer.Option(
        None, "--change", help="Internal (change) descriptor"
    ),
    log_level: str = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Sync a descriptor wallet against the configured backend and show its balance."""
    from descwallet.backends.blockchain import Blockchain, LogProgress
    from descwallet.wallet.descriptor import Descriptor
    from descwallet.wallet.service import Wallet

    settings = get_settings()
    setup_logging(log_level or settings.log_level)

    blockchain_config = settings.blockchain_config()
    if blockchain_config is None:
        logger.error("No backend configured. Set DESCWALLET_ESPLORA_URL or DESCWALLET_RPC_URL")
        raise typer.Exit(1)

    try:
        network = settings.network
        external = Descriptor.new(descriptor, network)
        internal = Descriptor.new(change_descriptor, network) if change_descriptor else None
        wallet = Wallet(external, internal, network, settings.database_config())
        blockchain = Blockchain(blockchain_config)
    except WalletError as e:
        logger.error(f"Failed to open wallet: {e}")
        raise typer.Exit(1)

    try:
        wallet.sync(blockchain, LogProgress())
        result = wallet.get_balance()
        receive = wallet.get_address(AddressIndex.LAST_UNUSED)
    except WalletError as e:
        logger.error(f"Sync failed: {e}")
        raise typer.Exit(1)
    finally:
        blockchain.close()
        wallet.close()

    typer.echo(f"\nTotal Balance: {result.total:,} sats ({result.total / 1e8:.8f} BTC)")
    typer.echo(f"  Confirmed:          {result.confirmed:>15,} sats")
    typer.echo(f"  Trusted pending:    {result.trusted_pending:>15,} sats")
    typer.echo(f"  Untrusted pending:  {result.untrusted_pending:>15,} sats")
    typer.echo(f"  Immature:           {result.immature:>15,} sats")
    typer.echo(f"\nReceive address #{receive.index}: {receive.address}")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
