"""
Bitcoin network parameters and protocol constants.
"""

from __future__ import annotations

# BIP32 extended key version bytes
XPRV_MAINNET = bytes.fromhex("0488ade4")
XPUB_MAINNET = bytes.fromhex("0488b21e")
XPRV_TESTNET = bytes.fromhex("04358394")
XPUB_TESTNET = bytes.fromhex("043587cf")

# WIF private key prefixes
WIF_MAINNET = 0x80
WIF_TESTNET = 0xEF

# Base58 address prefixes
P2PKH_MAINNET = 0x00
P2SH_MAINNET = 0x05
P2PKH_TESTNET = 0x6F
P2SH_TESTNET = 0xC4

# Bech32 human readable parts, keyed by network name
BECH32_HRP = {
    "bitcoin": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}

HARDENED_OFFSET = 0x80000000

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

# nSequence values
SEQUENCE_FINAL = 0xFFFFFFFF
MAX_RBF_SEQUENCE = 0xFFFFFFFD

TX_VERSION = 1

# Weight of an input without its satisfaction: outpoint + nSequence + scriptSig length byte
TXIN_BASE_WEIGHT = (32 + 4 + 4 + 1) * 4

# Default fee rate (sat/vB) when none is given; Bitcoin Core's minimum relay fee
DEFAULT_FEE_RATE = 1.0

# Bitcoin Core's dust relay fee, in sat/kvB
DUST_RELAY_TX_FEE = 3000

COINBASE_MATURITY = 100

# Addresses scanned past the last used one before sync stops
DEFAULT_STOP_GAP = 20

# Script pubkeys cached ahead of the last revealed index for ownership checks
SCRIPT_LOOKAHEAD = 25
