"""Bitcoin-specific utility functions."""

import hashlib
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
import base58
import structlog

logger = structlog.get_logger(__name__)

# Satoshis per Bitcoin
SATOSHIS_PER_BTC = Decimal('100000000')


def btc_to_satoshi(btc: Union[Decimal, float, int, str]) -> int:
    """Convert a BTC amount (as returned by RPC) to integer satoshis."""
    amount = Decimal(str(btc)) * SATOSHIS_PER_BTC
    return int(amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def get_script_type(script_hex: str) -> str:
    """Determine script type from script hex."""
    if not script_hex:
        return "unknown"
    
    script_bytes = bytes.fromhex(script_hex)
    
    # P2PKH: OP_DUP OP_HASH160 <pubKeyHash> OP_EQUALVERIFY OP_CHECKSIG
    if (len(script_bytes) == 25 and
        script_bytes[0] == 0x76 and
        script_bytes[1] == 0xa9 and
        script_bytes[2] == 0x14 and
        script_bytes[23] == 0x88 and
        script_bytes[24] == 0xac):
        return "P2PKH"
    
    # P2SH: OP_HASH160 <scriptHash> OP_EQUAL
    if (len(script_bytes) == 23 and
        script_bytes[0] == 0xa9 and
        script_bytes[1] == 0x14 and
        script_bytes[22] == 0x87):
        return "P2SH"
    
    if len(script_bytes) == 22 and script_bytes[0] == 0x00 and script_bytes[1] == 0x14:
        return "P2WPKH"
    
    if len(script_bytes) == 34 and script_bytes[0] == 0x00 and script_bytes[1] == 0x20:
        return "P2WSH"
    
    if len(script_bytes) == 34 and script_bytes[0] == 0x51 and script_bytes[1] == 0x20:
        return "P2TR"
    
    if len(script_bytes) > 0 and script_bytes[0] == 0x6a:  # OP_RETURN
        return "OP_RETURN"
    
    return "NON_STANDARD"


def decode_address(script_hex: str) -> Optional[str]:
    """Derive a mainnet address from a P2PKH or P2SH output script.

    Segwit and taproot outputs need bech32 encoding; for those the provider's
    own ``address`` field is used instead.
    """
    if not script_hex:
        return None
    
    try:
        script_type = get_script_type(script_hex)
        script_bytes = bytes.fromhex(script_hex)
        
        if script_type == "P2PKH":
            return _hash160_to_address(b'\x00', script_bytes[3:23])
        
        if script_type == "P2SH":
            return _hash160_to_address(b'\x05', script_bytes[2:22])
        
        return None
        
    except ValueError as e:
        logger.warning("Failed to decode address", script_hex=script_hex, error=str(e))
        return None


def _hash160_to_address(version_byte: bytes, hash160: bytes) -> str:
    """Base58Check-encode a hash160 with the given version byte."""
    payload = version_byte + hash160
    checksum = hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]
    return base58.b58encode(payload + checksum).decode('ascii')
