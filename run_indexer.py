#!/usr/bin/env python3
import signal
import sys
import threading

from chain import ChainSource
from config import (
    BATCH_SIZE,
    CONFIRMATIONS,
    DATABASE,
    START_HEIGHT,
    STATUS_PORT,
)
from indexer import Indexer


def _serve_status(indexer, port):
    from app import create_app
    app = create_app(indexer)
    t = threading.Thread(target=app.run, kwargs={'host': '0.0.0.0', 'port': port},
                         name='status-server', daemon=True)
    t.start()
    print(f"[status] serving on port {port}")
    return t


def main(argv=None):
    import argparse
    parser = argparse.ArgumentParser(description='Ethereum account ledger indexer')
    parser.add_argument('--database', default=DATABASE,
                        help='sqlite database file (default DATABASE env or eth_accounts.db).')
    parser.add_argument('--start-height', type=int, default=START_HEIGHT,
                        help='Last processed height to store on first run; indexing starts one above it.')
    parser.add_argument('--until', type=int, default=None,
                        help='Stop after this block has been processed instead of following the tip.')
    parser.add_argument('--batch-size', type=int, default=BATCH_SIZE,
                        help='Blocks fetched per batch.')
    parser.add_argument('--confirmations', type=int, default=CONFIRMATIONS,
                        help='Only index blocks at least this far below the chain tip.')
    parser.add_argument('--status-port', type=int, default=STATUS_PORT,
                        help='Serve /api/status and /api/health on this port.')
    args = parser.parse_args(argv)

    indexer = Indexer(
        ChainSource(),
        database=args.database,
        start_height=args.start_height,
        batch_size=args.batch_size,
        confirmations=args.confirmations,
    )

    def _on_signal(signum, frame):
        print(f"[index] received signal {signum}, finishing current block")
        indexer.request_stop()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    indexer.start(until=args.until)
    if args.status_port:
        _serve_status(indexer, args.status_port)

    # Short joins so signal handlers get to run on the main thread
    while not indexer.wait(timeout=0.5):
        pass

    if indexer.error is not None:
        print(f"[index] exiting with error: {indexer.error}")
        return 1
    print(f"[index] stopped at block {indexer.last_processed_block}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
