import os
from dotenv import load_dotenv

load_dotenv()  # This loads the variables from .env into the environment

API_KEY = os.getenv("API_KEY")
RPC_URL = os.getenv("RPC_URL") or (
    f"https://mainnet.infura.io/v3/{API_KEY}" if API_KEY else "http://127.0.0.1:8545"
)
RPC_TIMEOUT = float(os.getenv("RPC_TIMEOUT", "60"))

CHAIN_NAME = os.getenv("CHAIN_NAME", "ETH")
DATABASE = os.getenv("DATABASE", "eth_accounts.db")
# Last processed height stored on first run, so indexing starts at START_HEIGHT + 1
START_HEIGHT = int(os.getenv("START_HEIGHT", "0"))

BATCH_SIZE = int(os.getenv("INDEX_BATCH_SIZE", "10"))
# Prefetch pipeline config
PREFETCH_WORKERS = int(os.getenv("PREFETCH_WORKERS", "2"))  # parallel RPC workers for prefetch
PREFETCH_DEPTH = int(os.getenv("PREFETCH_DEPTH", "2"))      # how many batches to keep in flight

CONFIRMATIONS = int(os.getenv("CONFIRMATIONS", "12"))  # only index blocks this far below the tip
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "12"))  # seconds between tip checks once caught up

# Receipts
RECEIPT_TIMEOUT = float(os.getenv("RECEIPT_TIMEOUT", "120"))
RECEIPT_POLL_INTERVAL = float(os.getenv("RECEIPT_POLL_INTERVAL", "1"))
RECEIPT_PREFETCH = os.getenv("RECEIPT_PREFETCH", "1") == "1"
RECEIPT_BATCH_CHUNK = int(os.getenv("RECEIPT_BATCH_CHUNK", "100"))

LOG_TXS = os.getenv("LOG_TXS", "0") == "1"
STATUS_PORT = int(os.getenv("STATUS_PORT")) if os.getenv("STATUS_PORT") else None
