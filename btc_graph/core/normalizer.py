"""Conversion of raw provider payloads into canonical records."""

from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Any, Dict, List, Optional

import structlog

from btc_graph.exceptions import PermanentProviderError
from btc_graph.models.records import (
    BlockRecord,
    COINBASE_PREV_TXID,
    COINBASE_PREV_VOUT,
    GENESIS_PREV_HASH,
    InputRecord,
    OutputRecord,
    TransactionRecord,
)
from btc_graph.utils.bitcoin import btc_to_satoshi, decode_address

logger = structlog.get_logger(__name__)


class RecordNormalizer:
    """Validate provider payloads and build Block/Transaction records.

    Everything entering the store passes through here exactly once; a payload
    missing a required field raises PermanentProviderError.
    """

    def __init__(self):
        self.logger = logger.bind(component="record_normalizer")

    def normalize_block(self, raw: Dict[str, Any]) -> BlockRecord:
        """Build a BlockRecord from a ``getblock`` payload."""
        if not isinstance(raw, dict):
            raise PermanentProviderError(f"Block payload is not an object: {type(raw).__name__}")

        block_hash = self._require(raw, 'hash', "block")
        txids = self._txids(raw.get('tx', []), block_hash)

        try:
            block_time = datetime.fromtimestamp(int(self._require(raw, 'time', block_hash)), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise PermanentProviderError(f"Block {block_hash} has invalid time: {e}") from e

        tx_count = raw.get('nTx', len(txids))

        return BlockRecord(
            hash=block_hash,
            # genesis has no previousblockhash; it gets the sentinel instead
            prev_hash=raw.get('previousblockhash') or GENESIS_PREV_HASH,
            size=raw.get('size'),
            tx_count=tx_count,
            version=raw.get('version'),
            merkle_root=raw.get('merkleroot'),
            time=block_time,
            bits=raw.get('bits'),
            nonce=raw.get('nonce'),
            txids=txids,
        )

    def normalize_transaction(self, raw: Dict[str, Any], txid: str,
                              block_hash: str, index: int) -> TransactionRecord:
        """Build a TransactionRecord from a verbose ``getrawtransaction`` payload."""
        if not isinstance(raw, dict):
            raise PermanentProviderError(f"Transaction payload for {txid} is not an object")

        vin = raw.get('vin')
        vout = raw.get('vout')
        if not isinstance(vin, list) or not vin:
            raise PermanentProviderError(f"Transaction {txid} has no inputs")
        if not isinstance(vout, list):
            raise PermanentProviderError(f"Transaction {txid} has no output list")

        try:
            is_coinbase = 'coinbase' in vin[0]
            inputs = [self._parse_input(i, entry, txid) for i, entry in enumerate(vin)]
            outputs = [self._parse_output(i, entry, txid) for i, entry in enumerate(vout)]
        except (TypeError, ValueError, AttributeError) as e:
            raise PermanentProviderError(
                f"Transaction {txid} has a malformed input or output: {e}"
            ) from e

        size = raw.get('size')
        if size is None and raw.get('hex'):
            size = len(raw['hex']) // 2

        return TransactionRecord(
            txid=txid,
            block_hash=block_hash,
            index_in_block=index,
            version=raw.get('version'),
            locktime=raw.get('locktime', 0),
            size=size,
            inputs=inputs,
            outputs=outputs,
            is_coinbase=is_coinbase,
        )

    def _parse_input(self, vin_index: int, entry: Dict[str, Any], txid: str) -> InputRecord:
        witness = ''.join(entry.get('txinwitness') or [])

        if 'coinbase' in entry:
            return InputRecord(
                vin=vin_index,
                prev_txid=COINBASE_PREV_TXID,
                prev_vout=COINBASE_PREV_VOUT,
                script_sig=entry.get('coinbase', ''),
                sequence=entry.get('sequence', 0),
                witness=witness,
            )

        prev_txid = entry.get('txid')
        prev_vout = entry.get('vout')
        if not prev_txid or prev_vout is None:
            raise PermanentProviderError(f"Transaction {txid} input {vin_index} has no outpoint")

        script_sig = entry.get('scriptSig') or {}
        return InputRecord(
            vin=vin_index,
            prev_txid=prev_txid,
            prev_vout=int(prev_vout),
            script_sig=script_sig.get('hex', ''),
            sequence=entry.get('sequence', 0),
            witness=witness,
        )

    def _parse_output(self, vout_index: int, entry: Dict[str, Any], txid: str) -> OutputRecord:
        if 'value' not in entry:
            raise PermanentProviderError(f"Transaction {txid} output {vout_index} has no value")

        try:
            value = btc_to_satoshi(entry['value'])
        except (InvalidOperation, ValueError, TypeError) as e:
            raise PermanentProviderError(
                f"Transaction {txid} output {vout_index} has invalid value {entry['value']!r}"
            ) from e

        script_pub_key = entry.get('scriptPubKey') or {}
        script_hex = script_pub_key.get('hex', '')

        return OutputRecord(
            vout=vout_index,
            value=value,
            script_pubkey=script_hex,
            address=self._address(script_pub_key, script_hex),
        )

    @staticmethod
    def _address(script_pub_key: Dict[str, Any], script_hex: str) -> Optional[str]:
        # Bitcoin Core >= 22 returns "address", older releases "addresses"
        if script_pub_key.get('address'):
            return script_pub_key['address']
        addresses = script_pub_key.get('addresses') or []
        if addresses:
            return addresses[0]
        return decode_address(script_hex)

    @staticmethod
    def _txids(entries: List[Any], block_hash: str) -> List[str]:
        txids = []
        for entry in entries:
            txid = entry.get('txid') if isinstance(entry, dict) else entry
            if not isinstance(txid, str) or not txid:
                raise PermanentProviderError(f"Block {block_hash} lists an invalid txid {entry!r}")
            txids.append(txid)
        return txids

    @staticmethod
    def _require(raw: Dict[str, Any], key: str, context: str) -> Any:
        value = raw.get(key)
        if value is None:
            raise PermanentProviderError(f"{context}: missing field '{key}'")
        return value
