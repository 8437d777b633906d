"""
Ethereum JSON-RPC chain source.

Blocks come from eth_getBlockByNumber (full transactions), receipts from
eth_getTransactionReceipt. Every transport problem, JSON-RPC error member or
malformed payload raises ChainError; reverted transactions are not errors and
come back as a Receipt tagged RECEIPT_REVERTED.
"""
import json
import time
from collections import namedtuple

import requests
# Reusable HTTP session for RPC calls
from requests.adapters import HTTPAdapter

from config import (
    RECEIPT_BATCH_CHUNK,
    RECEIPT_POLL_INTERVAL,
    RECEIPT_TIMEOUT,
    RPC_TIMEOUT,
    RPC_URL,
)

RECEIPT_SUCCESS = 'success'
RECEIPT_REVERTED = 'reverted'

Receipt = namedtuple('Receipt', ['status', 'gas_used', 'effective_gas_price'])

_session = requests.Session()
_session.headers.update({'content-type': 'application/json', 'Connection': 'keep-alive'})
# Increase connection pools to better reuse TCP sessions during batching
_session.mount('http://', HTTPAdapter(pool_connections=16, pool_maxsize=16, max_retries=0))
_session.mount('https://', HTTPAdapter(pool_connections=16, pool_maxsize=16, max_retries=0))


class ChainError(Exception):
    """Transport failure or malformed data from the chain source."""


def hex_to_int(h):
    if h is None:
        return None
    if isinstance(h, int):
        return h
    if not isinstance(h, str) or not h.startswith('0x'):
        raise ChainError(f"Expected hex quantity, got {h!r}")
    return int(h, 16) if h != '0x' else 0


def _lower(value):
    return value.lower() if value else None


def parse_tx(raw):
    try:
        return {
            'hash': raw['hash'].lower(),
            'block_number': hex_to_int(raw['blockNumber']),
            'from': _lower(raw.get('from')),
            'to': _lower(raw.get('to')),
            'value': hex_to_int(raw.get('value', '0x0')),
            'gas_price': hex_to_int(raw.get('gasPrice')),
        }
    except (KeyError, AttributeError, TypeError, ValueError) as e:
        raise ChainError(f"Malformed transaction: {e}") from e


def parse_block(raw):
    try:
        return {
            'number': hex_to_int(raw['number']),
            'hash': raw.get('hash'),
            'timestamp': hex_to_int(raw['timestamp']),
            'miner': raw['miner'].lower(),
            'gas_used': hex_to_int(raw['gasUsed']),
            'base_fee_per_gas': hex_to_int(raw.get('baseFeePerGas')),
            'transactions': [parse_tx(t) for t in raw.get('transactions', [])],
        }
    except (KeyError, AttributeError, TypeError, ValueError) as e:
        raise ChainError(f"Malformed block: {e}") from e


def parse_receipt(raw, gas_price=None):
    """
    Turn a raw receipt into a Receipt. status 0x0 means reverted; receipts from
    before Byzantium carry no status and count as successful. Receipts that lack
    effectiveGasPrice fall back to the transaction's gasPrice.
    """
    try:
        effective_gas_price = hex_to_int(raw.get('effectiveGasPrice'))
        if effective_gas_price is None:
            effective_gas_price = gas_price
        if effective_gas_price is None:
            raise ChainError(f"Receipt {raw.get('transactionHash')} has no gas price")
        status = RECEIPT_REVERTED if hex_to_int(raw.get('status')) == 0 else RECEIPT_SUCCESS
        return Receipt(status, hex_to_int(raw['gasUsed']), effective_gas_price)
    except (KeyError, AttributeError, TypeError, ValueError) as e:
        raise ChainError(f"Malformed receipt: {e}") from e


class ChainSource:

    def __init__(self, url=RPC_URL, session=None, timeout=RPC_TIMEOUT,
                 receipt_timeout=RECEIPT_TIMEOUT, receipt_poll_interval=RECEIPT_POLL_INTERVAL,
                 receipt_batch_chunk=RECEIPT_BATCH_CHUNK):
        self.url = url
        self.session = session or _session
        self.timeout = timeout
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_interval = receipt_poll_interval
        self.receipt_batch_chunk = receipt_batch_chunk
        self._receipts = {}

    def _post(self, payload):
        try:
            r = self.session.post(self.url, data=json.dumps(payload), timeout=self.timeout)
            r.raise_for_status()
            return r.json()
        except requests.exceptions.RequestException as e:
            raise ChainError(f"RPC call failed: {e}") from e
        except ValueError as e:
            raise ChainError(f"RPC returned invalid JSON: {e}") from e

    def rpc_request(self, method, params=None):
        resp = self._post({"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []})
        if not isinstance(resp, dict):
            raise ChainError(f"Unexpected RPC response for {method}: {resp!r}")
        if resp.get('error') is not None:
            raise ChainError(f"RPC error for {method}: {resp['error']}")
        return resp.get('result')

    # --- Batch RPC helpers ---
    def rpc_batch(self, method_params_list):
        """
        Send a JSON-RPC batch.
        method_params_list: list of tuples (method, params)
        Returns a list of results in the same order as input.
        """
        if not method_params_list:
            return []
        calls = [
            {"jsonrpc": "2.0", "id": i, "method": m, "params": p or []}
            for i, (m, p) in enumerate(method_params_list)
        ]
        resp = self._post(calls)
        if not isinstance(resp, list):
            raise ChainError(f"RPC batch not supported or failed: {resp!r}")
        # Map by id so we can restore the input order
        by_id = {item.get("id"): item for item in resp if isinstance(item, dict)}
        out = []
        for i, (m, _) in enumerate(method_params_list):
            item = by_id.get(i)
            if item is None:
                raise ChainError(f"RPC batch response missing id {i} ({m})")
            if item.get('error') is not None:
                raise ChainError(f"RPC error for {m}: {item['error']}")
            out.append(item.get('result'))
        return out

    def get_tip_height(self):
        return hex_to_int(self.rpc_request('eth_blockNumber'))

    def get_block_with_transactions(self, height):
        raw = self.rpc_request('eth_getBlockByNumber', [hex(height), True])
        if raw is None:
            raise ChainError(f"Block {height} not found")
        return parse_block(raw)

    def get_blocks_with_transactions(self, heights):
        results = self.rpc_batch([('eth_getBlockByNumber', [hex(h), True]) for h in heights])
        blocks = []
        for h, raw in zip(heights, results):
            if raw is None:
                raise ChainError(f"Block {h} not found")
            blocks.append(parse_block(raw))
        return blocks

    def prefetch_receipts(self, block):
        """
        Fetch all receipts of a block in chunked batches and keep them for
        wait_for_receipt. Receipts the node does not have yet are left to polling.
        """
        txs = block['transactions']
        self._receipts = {}
        chunk = max(1, self.receipt_batch_chunk)
        for i in range(0, len(txs), chunk):
            part = txs[i:i + chunk]
            results = self.rpc_batch([('eth_getTransactionReceipt', [t['hash']]) for t in part])
            for t, raw in zip(part, results):
                if raw is not None:
                    self._receipts[t['hash']] = parse_receipt(raw, t.get('gas_price'))

    def wait_for_receipt(self, tx):
        """Resolve a transaction's receipt, polling until the node has it."""
        cached = self._receipts.pop(tx['hash'], None)
        if cached is not None:
            return cached
        deadline = time.monotonic() + self.receipt_timeout
        while True:
            raw = self.rpc_request('eth_getTransactionReceipt', [tx['hash']])
            if raw is not None:
                return parse_receipt(raw, tx.get('gas_price'))
            if time.monotonic() >= deadline:
                raise ChainError(f"Timed out waiting for receipt of {tx['hash']}")
            time.sleep(self.receipt_poll_interval)
