"""
Bitcoin network constants used by the wallet.

Dust and relay-fee values follow Bitcoin Core's default policy:
- STANDARD_DUST_LIMIT: smallest output Bitcoin Core relays (546 sats)
- MIN_RELAY_FEE_RATE: default minrelaytxfee expressed in sat/vB
"""

from __future__ import annotations

from decimal import Decimal

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Default -minrelaytxfee (1000 sat/kvB)
MIN_RELAY_FEE_RATE = Decimal("1")  # sat/vB

DEFAULT_FEE_RATE = Decimal("10")  # sat/vB

DEFAULT_GAP_LIMIT = 20

# Seconds a build keeps its inputs reserved before they become selectable again
DEFAULT_RESERVATION_TIMEOUT = 3600

SATS_PER_BTC = 100_000_000

# BIP44 purpose for native segwit (BIP84)
BIP84_PURPOSE = 84

# Size estimates for P2WPKH spends (bytes)
TX_OVERHEAD_SIZE = 4 + 4  # version + locktime
SEGWIT_MARKER_SIZE = 2
P2WPKH_INPUT_SIZE = 32 + 4 + 1 + 4  # outpoint + empty scriptSig + sequence
# count + (len + 72-byte DER signature + sighash byte) + (len + 33-byte pubkey)
P2WPKH_WITNESS_SIZE = 1 + 1 + 73 + 1 + 33

# Blocks may not be timestamped more than two hours ahead of local time
MAX_BLOCK_TIME_DRIFT = 2 * 60 * 60

# Highest (least difficult) compact proof-of-work target per network
MAX_PROOF_OF_WORK = {
    "mainnet": 0x1D00FFFF,
    "testnet": 0x1D00FFFF,
    "signet": 0x1E0377AE,
    "regtest": 0x207FFFFF,
}

BECH32_HRP = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}

# Base58 version bytes: (P2PKH, P2SH)
BASE58_VERSIONS = {
    "mainnet": (0x00, 0x05),
    "testnet": (0x6F, 0xC4),
    "signet": (0x6F, 0xC4),
    "regtest": (0x6F, 0xC4),
}
