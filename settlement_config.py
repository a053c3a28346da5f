"""
Settlement reconciliation configuration.

Column aliases for each marketplace export, fixed report constants, and the
logging setup shared by the CLI and the dashboard.

The alias lists are ordered: the first candidate found in a row wins, so the
most authoritative vendor column goes first (e.g. ``quantity-purchased``
before the generic ``qty``).
"""

import logging
import os
from typing import Dict, List

from dotenv import load_dotenv
from tqdm import tqdm

load_dotenv()

# --- Report constants ---
UNKNOWN_ORDER_ID = "UNKNOWN"
UNKNOWN_SKU = "__UNKNOWN__"
UNKNOWN_MONTH = "Unknown"
PNL_TOP_N = 20
LEADERBOARD_TOP_N = 10
SHEET_NAME_MAX = 31
INACTIVE_REASON = "never ordered (in this file)"
EMPTY_SHEET_ROW = {"message": "No data"}

# Names of the tables produced by one analysis run, in export order
SUMMARY_TABLES = [
    "order_summary",
    "order_unique_skus",
    "raw_concat",
    "sku_map",
    "negative_orders",
    "missing_cost_orders",
    "inactive_skus",
    "inactive_sku_summary",
]

# --- Environment ---
LOG_FILE = os.getenv("SETTLEMENT_LOG_FILE", "settlement_reports.log")
OUTPUT_DIR = os.getenv("SETTLEMENT_OUTPUT_DIR", "processed")
DEFAULT_MARKETPLACE = os.getenv("SETTLEMENT_MARKETPLACE", "amazon")


# --- Column aliases ---
MASTER_ALIASES: Dict[str, List[str]] = {
    "sku": ["sku", "Seller SKU", "SellerSKU", "seller-sku", "seller_sku"],
    "name": ["name", "Product Name", "Product", "ProductName", "product_name"],
    "cost": ["cog", "COGS", "COG", "Cost", "unit cost", "unit_cost"],
}

MARKETPLACE_ALIASES: Dict[str, Dict[str, List[str]]] = {
    "amazon": {
        "amount": ["amount", "total-amount", "total_amount"],
        "quantity": [
            "quantity-purchased",
            "quantity purchased",
            "quantity_purchased",
            "qty",
            "quantity",
        ],
        "sku": ["sku", "skus", "seller sku", "seller-sku", "seller_sku", "SellerSKU"],
        "description": ["amount-description", "amount description", "description", "item description"],
        "order_id": [
            "merchant-order-id",
            "merchant order id",
            "merchantorderid",
            "order-id",
            "order id",
            "orderid",
            "order_id",
        ],
        "posted_date": ["posted-date", "posted date", "posted_date"],
        "posted_date_time": ["posted-date-time", "posted date time", "posted_date_time"],
        "transaction_type": ["transaction-type", "transaction type", "transaction_type", "type"],
    },
    # Flipkart exports carry no transaction type column, so every group
    # classifies as a plain order.
    "flipkart": {
        "amount": ["total amount", "total_amount", "amount"],
        "quantity": ["quantity", "qty", "quantity-purchased"],
        "sku": ["sku", "seller sku", "item sku"],
        "description": ["description"],
        "order_id": ["order id", "order-id", "orderid", "order_id"],
        "posted_date": ["order_date", "order date", "order-date"],
        "posted_date_time": ["order_date_time", "order date time", "order-date-time"],
        "transaction_type": [],
    },
}


def get_marketplace_aliases(marketplace: str) -> Dict[str, List[str]]:
    """Return the alias table for a marketplace name (case-insensitive)."""
    key = (marketplace or "").strip().lower()
    if key not in MARKETPLACE_ALIASES:
        raise ValueError(
            f"Unknown marketplace '{marketplace}' (expected one of: {', '.join(MARKETPLACE_ALIASES)})"
        )
    return MARKETPLACE_ALIASES[key]


# --- Logging ---
class TqdmLoggingHandler(logging.Handler):
    def emit(self, record):
        try:
            msg = self.format(record)
            tqdm.write(msg)
        except Exception:
            self.handleError(record)


def configure_logging(log_file: str = LOG_FILE, level: int = logging.INFO) -> logging.Logger:
    """Log to file, and to the console through tqdm so progress bars stay intact."""
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.FileHandler(log_file)],
    )
    root = logging.getLogger()
    if not any(isinstance(h, TqdmLoggingHandler) for h in root.handlers):
        tqdm_handler = TqdmLoggingHandler()
        tqdm_handler.setFormatter(formatter)
        tqdm_handler.setLevel(logging.WARNING)
        root.addHandler(tqdm_handler)
    return root
