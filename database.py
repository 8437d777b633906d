import sqlite3

from config import DATABASE

ACCOUNT_FIELDS = (
    'address',
    'balance',
    'total_tx_count',
    'incoming_tx_count',
    'outgoing_tx_count',
    'total_fees_paid',
    'total_received',
    'total_sent',
    'total_mined_amount',
    'total_mined_blocks',
)

TX_FIELDS = (
    'tx_hash',
    'block_number',
    'from_address',
    'to_address',
    'success',
    'amount',
    'fees_amount',
    'total_amount',
    'from_previous_balance',
    'to_previous_balance',
    'from_next_balance',
    'to_next_balance',
)


def connect(path=DATABASE):
    # Only the indexer thread writes; the connection may be opened on another thread
    conn = sqlite3.connect(path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA journal_mode=WAL')
    conn.execute('PRAGMA synchronous=NORMAL')
    conn.execute('PRAGMA busy_timeout=5000')
    ensure_tables_exist(conn)
    return conn


def create_indices(conn):
    c = conn.cursor()
    c.execute('CREATE INDEX IF NOT EXISTS idx_tx_block          ON transactions(block_number)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_tx_from           ON transactions(from_address)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_tx_to             ON transactions(to_address)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_block_rewards_acc ON block_rewards(account)')
    c.close()


def ensure_tables_exist(conn):
    """
    Create the ledger tables if they are missing (non-destructive).
    Amounts are TEXT holding exact decimal strings in wei.
    """
    c = conn.cursor()
    try:
        c.execute('''
            CREATE TABLE IF NOT EXISTS last_processed_block (
                blockchain TEXT PRIMARY KEY,
                block_number INTEGER NOT NULL
            )
        ''')
        c.execute('''
            CREATE TABLE IF NOT EXISTS accounts (
                address TEXT PRIMARY KEY,
                balance TEXT NOT NULL,
                total_tx_count INTEGER NOT NULL,
                incoming_tx_count INTEGER NOT NULL,
                outgoing_tx_count INTEGER NOT NULL,
                total_fees_paid TEXT NOT NULL,
                total_received TEXT NOT NULL,
                total_sent TEXT NOT NULL,
                total_mined_amount TEXT NOT NULL,
                total_mined_blocks INTEGER NOT NULL
            )
        ''')
        c.execute('''
            CREATE TABLE IF NOT EXISTS transactions (
                tx_hash TEXT PRIMARY KEY,
                block_number INTEGER NOT NULL,
                from_address TEXT,
                to_address TEXT,
                success BOOLEAN NOT NULL,
                amount TEXT NOT NULL,
                fees_amount TEXT NOT NULL,
                total_amount TEXT NOT NULL,
                from_previous_balance TEXT,
                to_previous_balance TEXT,
                from_next_balance TEXT,
                to_next_balance TEXT
            )
        ''')
        c.execute('''
            CREATE TABLE IF NOT EXISTS block_rewards (
                block_number INTEGER PRIMARY KEY,
                account TEXT NOT NULL,
                amount TEXT NOT NULL
            )
        ''')
        create_indices(conn)
        conn.commit()
    finally:
        c.close()


# --- Checkpoint store ---
def get_last_processed_block(conn, blockchain, start_height):
    """
    Return the last processed height for `blockchain`, storing `start_height`
    on first access. Upsert, then read, so two first readers cannot race.
    """
    c = conn.cursor()
    try:
        c.execute('''
            INSERT INTO last_processed_block (blockchain, block_number)
            VALUES (?, ?)
            ON CONFLICT(blockchain) DO NOTHING
        ''', (blockchain, start_height))
        c.execute('SELECT block_number FROM last_processed_block WHERE blockchain = ?', (blockchain,))
        row = c.fetchone()
        conn.commit()
        return row[0]
    finally:
        c.close()


def set_last_processed_block(conn, blockchain, block_number):
    # No commit here; caller commits together with the block's effects
    conn.execute('UPDATE last_processed_block SET block_number = ? WHERE blockchain = ?',
                 (block_number, blockchain))


# --- Account ledger ---
def get_or_create_account(conn, address):
    c = conn.cursor()
    try:
        c.execute('''
            INSERT INTO accounts (address, balance, total_tx_count, incoming_tx_count, outgoing_tx_count,
                                  total_fees_paid, total_received, total_sent, total_mined_amount,
                                  total_mined_blocks)
            VALUES (?, '0', 0, 0, 0, '0', '0', '0', '0', 0)
            ON CONFLICT(address) DO NOTHING
        ''', (address,))
        c.execute(f'SELECT {", ".join(ACCOUNT_FIELDS)} FROM accounts WHERE address = ?', (address,))
        return dict(zip(ACCOUNT_FIELDS, c.fetchone()))
    finally:
        c.close()


def get_account(conn, address):
    c = conn.cursor()
    try:
        c.execute(f'SELECT {", ".join(ACCOUNT_FIELDS)} FROM accounts WHERE address = ?', (address,))
        row = c.fetchone()
        return dict(zip(ACCOUNT_FIELDS, row)) if row else None
    finally:
        c.close()


def update_account(conn, account):
    """Overwrite every mutable field of the account row with the given record."""
    conn.execute('''
        UPDATE accounts SET
            balance = ?,
            total_tx_count = ?,
            incoming_tx_count = ?,
            outgoing_tx_count = ?,
            total_fees_paid = ?,
            total_received = ?,
            total_sent = ?,
            total_mined_amount = ?,
            total_mined_blocks = ?
        WHERE address = ?
    ''', (account['balance'], account['total_tx_count'], account['incoming_tx_count'],
          account['outgoing_tx_count'], account['total_fees_paid'], account['total_received'],
          account['total_sent'], account['total_mined_amount'], account['total_mined_blocks'],
          account['address']))


# --- Transaction journal ---
def tx_exists(conn, tx_hash):
    c = conn.cursor()
    try:
        c.execute('SELECT 1 FROM transactions WHERE tx_hash = ?', (tx_hash,))
        return c.fetchone() is not None
    finally:
        c.close()


def insert_tx(conn, tx):
    conn.execute(f'''
        INSERT INTO transactions ({", ".join(TX_FIELDS)})
        VALUES ({", ".join("?" for _ in TX_FIELDS)})
    ''', tuple(tx[f] for f in TX_FIELDS))


def get_tx(conn, tx_hash):
    c = conn.cursor()
    try:
        c.execute(f'SELECT {", ".join(TX_FIELDS)} FROM transactions WHERE tx_hash = ?', (tx_hash,))
        row = c.fetchone()
        if row is None:
            return None
        tx = dict(zip(TX_FIELDS, row))
        tx['success'] = bool(tx['success'])
        return tx
    finally:
        c.close()


# --- Block rewards ---
def block_reward_exists(conn, block_number):
    c = conn.cursor()
    try:
        c.execute('SELECT 1 FROM block_rewards WHERE block_number = ?', (block_number,))
        return c.fetchone() is not None
    finally:
        c.close()


def insert_block_reward(conn, block_number, account, amount):
    conn.execute('INSERT INTO block_rewards (block_number, account, amount) VALUES (?, ?, ?)',
                 (block_number, account, amount))
