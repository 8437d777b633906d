"""
Block ingestion and account ledger reconciliation.

process_tx / process_block apply one transaction / one block to the ledger.
Indexer is the outer loop: it resumes from the stored checkpoint, prefetches
blocks in batches, applies them strictly in height order and advances the
checkpoint in the same sqlite transaction as each block's effects.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import localcontext

from amounts import WEI_CONTEXT, ZERO, format_amount, to_amount
from chain import RECEIPT_REVERTED, RECEIPT_SUCCESS, ChainError
from config import (
    BATCH_SIZE,
    CHAIN_NAME,
    CONFIRMATIONS,
    DATABASE,
    LOG_TXS,
    POLL_INTERVAL,
    PREFETCH_DEPTH,
    PREFETCH_WORKERS,
    RECEIPT_PREFETCH,
    START_HEIGHT,
)
from database import (
    block_reward_exists,
    connect,
    get_last_processed_block,
    get_or_create_account,
    insert_block_reward,
    insert_tx,
    set_last_processed_block,
    tx_exists,
    update_account,
)
from rewards import calc_block_reward

STARTING = 'starting'
RUNNING = 'running'
DRAINING = 'draining'
STOPPED = 'stopped'


def _format_time(timestamp):
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


def calc_fees_amount(receipt):
    with localcontext(WEI_CONTEXT):
        return to_amount(receipt.gas_used) * to_amount(receipt.effective_gas_price)


def process_tx(conn, transaction, resolve_receipt):
    """
    Apply one transaction to the ledger.

    Returns the journal entry, or None if the hash was already journaled.
    `resolve_receipt(transaction)` must return a chain.Receipt; anything it
    raises propagates and aborts the block.
    """
    tx_hash = transaction['hash'].lower()
    if tx_exists(conn, tx_hash):
        return None

    from_address = transaction['from'].lower() if transaction.get('from') else None
    to_address = transaction['to'].lower() if transaction.get('to') else None

    # Both sides are read before any write: previous balances are the pre-tx snapshot
    accounts = {}
    if from_address:
        accounts['from'] = get_or_create_account(conn, from_address)
    if to_address:
        accounts['to'] = get_or_create_account(conn, to_address)

    receipt = resolve_receipt(transaction)
    if receipt.status not in (RECEIPT_SUCCESS, RECEIPT_REVERTED):
        raise ChainError(f"Unknown receipt status {receipt.status!r} for {tx_hash}")

    amount = to_amount(transaction['value'])
    fees_amount = calc_fees_amount(receipt)

    from_previous_balance = accounts['from']['balance'] if 'from' in accounts else None
    to_previous_balance = accounts['to']['balance'] if 'to' in accounts else None

    with localcontext(WEI_CONTEXT):
        total_amount = fees_amount + amount
        from_next_balance = None
        if from_previous_balance is not None:
            from_next_balance = to_amount(from_previous_balance) - amount - fees_amount
        to_next_balance = None
        if to_previous_balance is not None:
            to_next_balance = to_amount(to_previous_balance) + amount

    tx = {
        'tx_hash': tx_hash,
        'block_number': transaction['block_number'],
        'from_address': from_address,
        'to_address': to_address,
        'success': receipt.status == RECEIPT_SUCCESS,
        'amount': format_amount(amount),
        'fees_amount': format_amount(fees_amount),
        'total_amount': format_amount(total_amount),
        'from_previous_balance': from_previous_balance,
        'to_previous_balance': to_previous_balance,
        'from_next_balance': format_amount(from_next_balance) if from_next_balance is not None else None,
        'to_next_balance': format_amount(to_next_balance) if to_next_balance is not None else None,
    }
    insert_tx(conn, tx)

    if 'to' in accounts:
        account = accounts['to']
        with localcontext(WEI_CONTEXT):
            total_received = to_amount(account['total_received']) + amount
        update_account(conn, {
            **account,
            'balance': tx['to_next_balance'],
            'total_tx_count': account['total_tx_count'] + 1,
            'incoming_tx_count': account['incoming_tx_count'] + 1,
            'total_received': format_amount(total_received),
        })

    if 'from' in accounts:
        account = accounts['from']
        if from_address == to_address:
            # self-transfer: keep the receiver arm's counters
            account = get_or_create_account(conn, from_address)
        with localcontext(WEI_CONTEXT):
            total_fees_paid = to_amount(account['total_fees_paid']) + fees_amount
            total_sent = to_amount(account['total_sent']) + amount
        update_account(conn, {
            **account,
            'balance': tx['from_next_balance'],
            'total_tx_count': account['total_tx_count'] + 1,
            'outgoing_tx_count': account['outgoing_tx_count'] + 1,
            'total_fees_paid': format_amount(total_fees_paid),
            'total_sent': format_amount(total_sent),
        })

    return tx


def process_block_reward(conn, block, fees_sum):
    """
    Record the block reward and credit the miner. A block whose reward row
    already exists is not credited again.
    """
    block_number = block['number']
    reward = calc_block_reward(block_number, block['gas_used'], block.get('base_fee_per_gas'), fees_sum)
    miner = block['miner'].lower()

    if block_reward_exists(conn, block_number):
        print(f"[block] reward for block {block_number} already recorded, miner not credited again")
        return None

    insert_block_reward(conn, block_number, miner, format_amount(reward))
    account = get_or_create_account(conn, miner)
    with localcontext(WEI_CONTEXT):
        total_mined_amount = to_amount(account['total_mined_amount']) + reward
        balance = to_amount(account['balance']) + reward
    update_account(conn, {
        **account,
        'total_mined_amount': format_amount(total_mined_amount),
        'total_mined_blocks': account['total_mined_blocks'] + 1,
        'balance': format_amount(balance),
    })
    return reward


def process_block(conn, block, resolve_receipt, log_txs=LOG_TXS):
    """
    Apply a block's transactions in their original order, then its reward.
    Returns the reward credited to the miner (None if already recorded).
    """
    transactions = block['transactions']
    total_tx = len(transactions)
    fees_sum = ZERO
    for processed_tx, transaction in enumerate(transactions, 1):
        if log_txs:
            print(f"[tx] processing tx {transaction['hash']}, {processed_tx} of {total_tx}, "
                  f"from block {transaction['block_number']} created on {_format_time(block['timestamp'])}")
        tx = process_tx(conn, transaction, resolve_receipt)
        if tx is None:
            continue
        with localcontext(WEI_CONTEXT):
            fees_sum += to_amount(tx['fees_amount'])
    return process_block_reward(conn, block, fees_sum)


# --- Prefetch pipeline helpers ---
def _fetch_block_batch(chain, heights):
    return chain.get_blocks_with_transactions(heights)


# FIFO multi-future prefetch pipeline helper
def _prefetch_pipeline_iter(chain, start_h, end_h, batch_size, executor, depth):
    """
    Yield lists of blocks for contiguous height batches while keeping up to `depth`
    batches in flight using `executor`. Order is preserved (FIFO); a failed
    fetch raises when its batch is reached.
    """
    cur = start_h
    in_flight = []

    # Prime the pipeline
    while cur <= end_h and len(in_flight) < max(1, depth):
        heights = list(range(cur, min(cur + batch_size - 1, end_h) + 1))
        fut = executor.submit(_fetch_block_batch, chain, heights)
        in_flight.append(fut)
        cur = heights[-1] + 1

    # Drain while maintaining depth
    while in_flight:
        fut = in_flight.pop(0)
        blocks = fut.result()

        # Keep pipeline filled
        if cur <= end_h:
            heights = list(range(cur, min(cur + batch_size - 1, end_h) + 1))
            in_flight.append(executor.submit(_fetch_block_batch, chain, heights))
            cur = heights[-1] + 1

        yield blocks


class Indexer:
    """
    Single writer for one chain: starting -> running -> draining -> stopped.

    Shutdown is checked between blocks only, so a block is either fully
    committed together with its checkpoint or not at all.
    """

    def __init__(self, chain, conn=None, database=DATABASE, blockchain=CHAIN_NAME,
                 start_height=START_HEIGHT, batch_size=BATCH_SIZE, prefetch_workers=PREFETCH_WORKERS,
                 prefetch_depth=PREFETCH_DEPTH, confirmations=CONFIRMATIONS, poll_interval=POLL_INTERVAL,
                 receipt_prefetch=RECEIPT_PREFETCH, log_txs=LOG_TXS):
        self.chain = chain
        self.conn = conn
        # a connection opened by run() is closed by run()
        self._owns_conn = False
        self.database = database
        self.blockchain = blockchain
        self.start_height = start_height
        self.batch_size = max(1, batch_size)
        self.prefetch_workers = max(1, prefetch_workers)
        self.prefetch_depth = max(1, prefetch_depth)
        self.confirmations = max(0, confirmations)
        self.poll_interval = poll_interval
        self.receipt_prefetch = receipt_prefetch
        self.log_txs = log_txs

        self.state = STARTING
        self.error = None
        self.last_processed_block = None
        self._lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._thread = None

        # logging
        self.max_block_number_at_start = None
        self.processed_blocks_in_session = 0
        self.started_at = None

    def _set_state(self, state):
        with self._lock:
            if state == RUNNING and self._stop_requested.is_set():
                state = DRAINING
            self.state = state

    # --- lifecycle hooks ---
    def start(self, until=None):
        """Run the ingestion loop on a background thread."""
        self._thread = threading.Thread(target=self._run_in_thread, args=(until,),
                                        name=f"indexer-{self.blockchain}", daemon=True)
        self._thread.start()
        return self._thread

    def _run_in_thread(self, until):
        try:
            self.run(until)
        except Exception:
            # kept on self.error for the caller
            return

    def request_stop(self):
        self._stop_requested.set()
        with self._lock:
            if self.state in (STARTING, RUNNING):
                self.state = DRAINING

    def stop(self, timeout=None):
        """Request shutdown and block until the in-flight block is done."""
        print('[index] starting terminating...')
        self.request_stop()
        print('[index] waiting for current processing block...')
        stopped = self.wait(timeout)
        print('[index] current processing block done' if stopped else '[index] still draining after timeout')
        return stopped

    def wait(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return self.state == STOPPED

    # --- main loop ---
    def run(self, until=None):
        """
        Index blocks until shutdown is requested, or until block `until` has
        been processed when given. Errors are recorded and re-raised.
        """
        self.state = STARTING
        self.error = None
        self.processed_blocks_in_session = 0
        self.started_at = time.monotonic()
        try:
            if self.conn is None:
                self.conn = connect(self.database)
                self._owns_conn = True
            self.max_block_number_at_start = self.chain.get_tip_height()
            self.last_processed_block = get_last_processed_block(self.conn, self.blockchain, self.start_height)
            print(f"[index] {self.blockchain}: last processed block {self.last_processed_block}, "
                  f"chain tip {self.max_block_number_at_start}")
            self._set_state(RUNNING)
            self._pull_blocks(until)
        except Exception as e:
            self.error = e
            print(f"[index] stopped at block {self.last_processed_block}: {e}")
            raise
        finally:
            if self._owns_conn:
                self.conn.close()
                self.conn = None
                self._owns_conn = False
            self._set_state(STOPPED)

    def _target_height(self, until):
        target = self.chain.get_tip_height() - self.confirmations
        if until is not None:
            target = min(target, until)
        return target

    def _pull_blocks(self, until):
        prefetch_pool = ThreadPoolExecutor(max_workers=self.prefetch_workers)
        try:
            while not self._stop_requested.is_set():
                if until is not None and self.last_processed_block >= until:
                    return
                start_h = self.last_processed_block + 1
                end_h = self._target_height(until)
                if start_h > end_h:
                    self._stop_requested.wait(self.poll_interval)
                    continue

                for blocks in _prefetch_pipeline_iter(self.chain, start_h, end_h, self.batch_size,
                                                      prefetch_pool, self.prefetch_depth):
                    for block in blocks:
                        if self._stop_requested.is_set():
                            return
                        self._process_and_checkpoint(block)
        finally:
            prefetch_pool.shutdown(wait=True, cancel_futures=True)

    def _process_and_checkpoint(self, block):
        block_number = block['number']
        expected = self.last_processed_block + 1
        if block_number != expected:
            raise ChainError(f"Expected block {expected}, chain source returned {block_number}")

        print(f"[index] processing block {block_number}, txCount: {len(block['transactions'])}, "
              f"created on {_format_time(block['timestamp'])}")

        if self.receipt_prefetch:
            self.chain.prefetch_receipts(block)

        conn = self.conn
        if not conn.in_transaction:
            conn.execute('BEGIN IMMEDIATE')
        try:
            process_block(conn, block, self.chain.wait_for_receipt, log_txs=self.log_txs)
            set_last_processed_block(conn, self.blockchain, block_number)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

        self.last_processed_block = block_number
        self.log_processing_info(block_number)

    def log_processing_info(self, block_number):
        self.processed_blocks_in_session += 1
        blocks_per_minute = self.blocks_per_minute()
        blocks_left = max(0, self.max_block_number_at_start - block_number)
        hours_left = blocks_left / blocks_per_minute / 60 if blocks_per_minute else float('inf')
        print(f"[index] avg tempo: {blocks_per_minute:.0f} blocks per minute, "
              f"hours left {hours_left:.2f}, blocksLeft {blocks_left}")

    def blocks_per_minute(self):
        if self.started_at is None:
            return 0.0
        duration_minutes = (time.monotonic() - self.started_at) / 60
        if duration_minutes <= 0:
            return 0.0
        return self.processed_blocks_in_session / duration_minutes

    def status(self):
        with self._lock:
            state = self.state
        return {
            'state': state,
            'blockchain': self.blockchain,
            'last_processed_block': self.last_processed_block,
            'tip_at_start': self.max_block_number_at_start,
            'blocks_in_session': self.processed_blocks_in_session,
            'blocks_per_minute': round(self.blocks_per_minute(), 2),
            'error': str(self.error) if self.error is not None else None,
        }
