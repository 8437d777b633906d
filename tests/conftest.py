import pytest

from chain import RECEIPT_REVERTED, RECEIPT_SUCCESS, ChainError, Receipt
from database import connect

A = '0x' + 'a' * 40
B = '0x' + 'b' * 40
C = '0x' + 'c' * 40
MINER = '0x' + 'f' * 40


def tx_hash(n):
    return '0x' + format(n, '064x')


def make_tx(n, block_number, from_address=A, to_address=B, value=0):
    return {
        'hash': tx_hash(n),
        'block_number': block_number,
        'from': from_address,
        'to': to_address,
        'value': value,
        'gas_price': 1,
    }


def make_block(number, transactions=(), miner=MINER, gas_used=0, base_fee_per_gas=None):
    return {
        'number': number,
        'hash': '0x' + format(number, '064x'),
        'timestamp': 1_600_000_000 + number * 13,
        'miner': miner,
        'gas_used': gas_used,
        'base_fee_per_gas': base_fee_per_gas,
        'transactions': list(transactions),
    }


def ok(fee):
    return Receipt(RECEIPT_SUCCESS, fee, 1)


def reverted(fee):
    return Receipt(RECEIPT_REVERTED, fee, 1)


class FakeChain:
    """In-memory chain source; receipts map tx hash -> Receipt or exception."""

    def __init__(self, blocks=(), receipts=None, tip=None):
        self.blocks = {b['number']: b for b in blocks}
        self.receipts = dict(receipts or {})
        self.tip = tip if tip is not None else max(self.blocks, default=0)
        self.fetched = []
        self.receipt_calls = []

    def get_tip_height(self):
        return self.tip

    def get_blocks_with_transactions(self, heights):
        self.fetched.append(list(heights))
        missing = [h for h in heights if h not in self.blocks]
        if missing:
            raise ChainError(f"Block {missing[0]} not found")
        return [self.blocks[h] for h in heights]

    def prefetch_receipts(self, block):
        pass

    def wait_for_receipt(self, tx):
        self.receipt_calls.append(tx['hash'])
        receipt = self.receipts.get(tx['hash'], ok(0))
        if isinstance(receipt, Exception):
            raise receipt
        return receipt


@pytest.fixture
def conn():
    c = connect(':memory:')
    yield c
    c.close()
