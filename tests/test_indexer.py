import sqlite3
import threading
import time

import pytest

import indexer as indexer_module
from chain import ChainError
from conftest import A, B, MINER, FakeChain, make_block, make_tx, ok
from database import connect, get_account, get_last_processed_block, get_or_create_account, update_account
from indexer import DRAINING, RUNNING, STOPPED, Indexer, process_tx

ETH = 10 ** 18


def make_indexer(conn, chain, **kwargs):
    options = dict(blockchain='ETH', start_height=0, batch_size=3, prefetch_workers=2, prefetch_depth=2,
                   confirmations=0, poll_interval=0.01, receipt_prefetch=False)
    options.update(kwargs)
    return Indexer(chain, conn=conn, **options)


def simple_chain(n, start=1):
    blocks = [make_block(h, [make_tx(h, h, value=h)]) for h in range(start, start + n)]
    return FakeChain(blocks, receipts={b['transactions'][0]['hash']: ok(1) for b in blocks})


def test_first_block_scenario(conn):
    tx = make_tx(1, 1, value=100)
    chain = FakeChain([make_block(1, [tx])], receipts={tx['hash']: ok(2)})

    make_indexer(conn, chain).run(until=1)

    assert get_account(conn, A)['balance'] == '-102'
    assert get_account(conn, B)['balance'] == '100'
    row = conn.execute('SELECT success, fees_amount, total_amount FROM transactions').fetchall()
    assert [tuple(r) for r in row] == [(1, '2', '102')]


def test_checkpoint_advances_one_block_at_a_time(conn, monkeypatch):
    chain = simple_chain(10)
    written = []
    original = indexer_module.set_last_processed_block

    def record(c, blockchain, block_number):
        written.append(block_number)
        original(c, blockchain, block_number)

    monkeypatch.setattr(indexer_module, 'set_last_processed_block', record)
    idx = make_indexer(conn, chain)
    idx.run(until=10)

    assert written == list(range(1, 11))
    assert get_last_processed_block(conn, 'ETH', 0) == 10
    assert idx.state == STOPPED
    assert idx.processed_blocks_in_session == 10
    # fetched in batches of three, each height once
    assert sorted(h for batch in chain.fetched for h in batch) == list(range(1, 11))
    assert [1, 2, 3] in chain.fetched


class SlowFirstBatchChain(FakeChain):
    """The batch holding `slow_height` finishes after the batches behind it."""

    def __init__(self, blocks, receipts, slow_height, delay):
        super().__init__(blocks, receipts)
        self.slow_height = slow_height
        self.delay = delay
        self.completed = []
        self._completed_lock = threading.Lock()

    def get_blocks_with_transactions(self, heights):
        if heights[0] == self.slow_height:
            time.sleep(self.delay)
        blocks = super().get_blocks_with_transactions(heights)
        with self._completed_lock:
            self.completed.append(list(heights))
        return blocks


def test_batches_finishing_out_of_order_are_applied_in_order(conn, monkeypatch):
    plain = simple_chain(9)
    chain = SlowFirstBatchChain(plain.blocks.values(), plain.receipts, slow_height=1, delay=0.3)
    written = []
    original = indexer_module.set_last_processed_block

    def record(c, blockchain, block_number):
        written.append(block_number)
        original(c, blockchain, block_number)

    monkeypatch.setattr(indexer_module, 'set_last_processed_block', record)
    make_indexer(conn, chain, prefetch_workers=3, prefetch_depth=3).run(until=9)

    # the later batches really did come back first
    assert chain.completed[-1] == [1, 2, 3]
    assert written == list(range(1, 10))
    assert get_last_processed_block(conn, 'ETH', 0) == 9


def test_run_closes_the_connection_it_opened(tmp_path, monkeypatch):
    opened = []

    def connect_and_record(path):
        c = connect(path)
        opened.append(c)
        return c

    monkeypatch.setattr(indexer_module, 'connect', connect_and_record)
    db = str(tmp_path / 'ledger.db')
    chain = simple_chain(2)
    idx = Indexer(chain, database=db, blockchain='ETH', start_height=0, batch_size=3,
                  confirmations=0, poll_interval=0.01, receipt_prefetch=False)

    idx.run(until=2)

    assert idx.conn is None
    assert len(opened) == 1
    with pytest.raises(sqlite3.ProgrammingError):
        opened[0].execute('SELECT 1')
    check = connect(db)
    assert get_last_processed_block(check, 'ETH', 0) == 2
    check.close()


def test_run_closes_its_connection_after_error(tmp_path):
    chain = simple_chain(1)
    chain.tip = 2
    idx = Indexer(chain, database=str(tmp_path / 'ledger.db'), blockchain='ETH', start_height=0,
                  batch_size=1, confirmations=0, poll_interval=0.01, receipt_prefetch=False)

    with pytest.raises(ChainError):
        idx.run(until=2)

    assert idx.conn is None
    assert idx.state == STOPPED


def test_run_leaves_a_passed_in_connection_open(conn):
    idx = make_indexer(conn, simple_chain(1))
    idx.run(until=1)
    assert idx.conn is conn
    assert conn.execute('SELECT 1').fetchone()[0] == 1


def test_resumes_from_checkpoint(conn):
    chain = simple_chain(6)
    make_indexer(conn, chain).run(until=3)
    chain.fetched.clear()

    make_indexer(conn, chain).run(until=6)

    assert chain.fetched[0][0] == 4
    assert get_last_processed_block(conn, 'ETH', 0) == 6
    assert conn.execute('SELECT COUNT(*) FROM transactions').fetchone()[0] == 6


def test_start_height_sets_first_block(conn):
    chain = simple_chain(3, start=100)
    make_indexer(conn, chain, start_height=99).run(until=102)
    assert get_last_processed_block(conn, 'ETH', 0) == 102


def test_confirmations_keep_distance_from_tip(conn):
    chain = simple_chain(10)
    idx = make_indexer(conn, chain, confirmations=4)

    def stop_when_caught_up(timeout):
        idx.request_stop()
        return True

    idx._stop_requested.wait = stop_when_caught_up
    idx.run()

    assert get_last_processed_block(conn, 'ETH', 0) == 6


def test_restart_after_partial_block(conn):
    txs = [make_tx(n, 5, value=10) for n in (51, 52, 53)]
    block = make_block(5, txs)
    chain = FakeChain([block], receipts={t['hash']: ok(1) for t in txs})
    get_last_processed_block(conn, 'ETH', 4)
    for tx in txs[:2]:
        process_tx(conn, tx, chain.wait_for_receipt)
    conn.commit()
    chain.receipt_calls.clear()

    make_indexer(conn, chain, start_height=4).run(until=5)

    assert chain.receipt_calls == [txs[2]['hash']]
    assert conn.execute('SELECT COUNT(*) FROM transactions').fetchone()[0] == 3
    assert get_account(conn, A)['balance'] == '-33'
    assert get_account(conn, A)['outgoing_tx_count'] == 3
    assert get_account(conn, B)['balance'] == '30'
    assert conn.execute('SELECT COUNT(*) FROM block_rewards').fetchone()[0] == 1
    assert get_account(conn, MINER)['total_mined_blocks'] == 1


def test_restart_after_reward_committed(conn):
    block = make_block(5)
    chain = FakeChain([block])
    get_last_processed_block(conn, 'ETH', 4)
    indexer_module.process_block(conn, block, chain.wait_for_receipt)
    conn.commit()

    make_indexer(conn, chain, start_height=4).run(until=5)

    miner = get_account(conn, MINER)
    assert miner['total_mined_blocks'] == 1
    assert miner['balance'] == str(5 * ETH)
    assert get_last_processed_block(conn, 'ETH', 0) == 5


def test_failed_block_is_rolled_back(conn):
    txs = [make_tx(21, 2, value=5), make_tx(22, 2, from_address=B, to_address=A, value=1)]
    chain = simple_chain(3)
    chain.blocks[2] = make_block(2, txs)
    chain.receipts[txs[1]['hash']] = ChainError('connection reset')
    idx = make_indexer(conn, chain)

    with pytest.raises(ChainError):
        idx.run(until=3)

    assert idx.state == STOPPED
    assert isinstance(idx.error, ChainError)
    assert get_last_processed_block(conn, 'ETH', 0) == 1
    hashes = [r[0] for r in conn.execute('SELECT tx_hash FROM transactions')]
    assert txs[0]['hash'] not in hashes
    assert conn.execute('SELECT COUNT(*) FROM block_rewards').fetchone()[0] == 1
    assert idx.status()['error'] == 'connection reset'


def test_missing_block_is_fatal(conn):
    chain = simple_chain(2)
    chain.tip = 4
    with pytest.raises(ChainError):
        make_indexer(conn, chain, batch_size=2).run(until=4)
    assert get_last_processed_block(conn, 'ETH', 0) == 2


def test_out_of_order_block_is_rejected(conn):
    chain = simple_chain(3)
    chain.blocks[2] = make_block(3)
    with pytest.raises(ChainError):
        make_indexer(conn, chain).run(until=3)
    assert get_last_processed_block(conn, 'ETH', 0) == 1


def test_shutdown_waits_for_in_flight_block(conn):
    chain = simple_chain(6)
    entered = threading.Event()
    release = threading.Event()
    slow_hash = chain.blocks[2]['transactions'][0]['hash']
    resolve = chain.wait_for_receipt

    def slow_receipt(tx):
        if tx['hash'] == slow_hash:
            entered.set()
            assert release.wait(5)
        return resolve(tx)

    chain.wait_for_receipt = slow_receipt
    idx = make_indexer(conn, chain)
    idx.start()
    assert entered.wait(5)
    assert idx.state == RUNNING

    idx.request_stop()
    assert idx.state == DRAINING
    assert not idx.wait(timeout=0.05)

    release.set()
    assert idx.wait(timeout=5)
    assert idx.state == STOPPED
    assert idx.error is None
    assert idx.last_processed_block == 2
    assert get_last_processed_block(conn, 'ETH', 0) == 2


def test_stop_while_waiting_for_new_blocks(conn):
    chain = simple_chain(2)
    idx = make_indexer(conn, chain, poll_interval=30)
    idx.start()
    for _ in range(500):
        if idx.last_processed_block == 2:
            break
        time.sleep(0.01)

    assert idx.stop(timeout=5)
    assert idx.state == STOPPED
    assert get_last_processed_block(conn, 'ETH', 0) == 2


def test_stop_before_start_processes_nothing(conn):
    chain = simple_chain(3)
    idx = make_indexer(conn, chain)
    idx.request_stop()
    idx.run()
    assert idx.state == STOPPED
    assert get_last_processed_block(conn, 'ETH', 0) == 0


def test_balances_continue_from_existing_ledger(conn):
    account = get_or_create_account(conn, A)
    update_account(conn, {**account, 'balance': '1000'})
    conn.commit()
    tx = make_tx(1, 1, value=100)
    chain = FakeChain([make_block(1, [tx])], receipts={tx['hash']: ok(2)})

    make_indexer(conn, chain).run(until=1)

    assert get_account(conn, A)['balance'] == '898'


def test_status_snapshot(conn):
    chain = simple_chain(2)
    idx = make_indexer(conn, chain)
    assert idx.status()['state'] == 'starting'
    idx.run(until=2)
    status = idx.status()
    assert status['state'] == 'stopped'
    assert status['blockchain'] == 'ETH'
    assert status['last_processed_block'] == 2
    assert status['tip_at_start'] == 2
    assert status['blocks_in_session'] == 2
    assert status['error'] is None
