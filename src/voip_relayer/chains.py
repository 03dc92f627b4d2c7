"""Chain constants shared by the relayer.

Ethereum side: the VOIP bridge contract and its TokensLocked event.
Solana side: the well-known program IDs and the migration program's
instruction layout.
"""

import hashlib

from solders.pubkey import Pubkey

# ======================
# Ethereum
# ======================

# TokensLocked(uint256 amount, address indexed user, string solanaAddress, uint256 timestamp)
# The deployed contract emits amount in topic 1 and user in topic 2
TOKENS_LOCKED_SIGNATURE = "TokensLocked(uint256,address,string,uint256)"
# keccak256 of TOKENS_LOCKED_SIGNATURE
TOKENS_LOCKED_TOPIC = "0xa3c29410d4173cda5ec6e52fca2d334b67df70664e718bee6d216e089b408442"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Only the function the relayer calls
BRIDGE_ABI = [
    {
        "type": "function",
        "name": "burnTokens",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "solanaAddress", "type": "string"},
        ],
        "outputs": [],
    },
]

# ======================
# Amounts
# ======================

# Solana VOIP mint uses 9 decimals
DECIMALS_MULTIPLIER = 10**9
AMOUNT_BITS = 128
MIGRATE_AMOUNT_BITS = 64

# ======================
# Solana
# ======================

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string(
    "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
)

STATE_SEED = b"state"
MIGRATION_SEED = b"migration"

# Associated token program "Create" instruction
CREATE_ATA_DATA = bytes([0])


def anchor_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256("global:<name>"), Anchor's instruction tag."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


MIGRATE_DISCRIMINATOR = anchor_discriminator("migrate")
