"""
Settlement reconciliation engine.

Takes raw settlement rows (any header casing/separators) and a cost master,
and produces per-order profit summaries, per-order SKU cost details, and the
diagnostic tables (negative orders, missing costs, inactive SKUs).

Pipeline:
    master records -> master index (sku -> name, unit cost)
    raw rows       -> normalized rows (order id, sku, amount, qty, dates, type)
    normalized     -> order groups -> per-SKU max quantity -> order summaries
    summaries      -> totals (see settlement_pnl)

One engine serves every marketplace; the only per-marketplace input is the
column alias table from ``settlement_config``.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from settlement_config import (
    DEFAULT_MARKETPLACE,
    INACTIVE_REASON,
    MASTER_ALIASES,
    UNKNOWN_ORDER_ID,
    get_marketplace_aliases,
)
from settlement_fields import (
    MISSING,
    clean_text,
    extract_sku_from_text,
    format_timestamp,
    is_blank,
    parse_timestamp,
    resolve_field,
    safe_number,
)
from settlement_pnl import build_totals

logger = logging.getLogger(__name__)


# --- Data Structures ---
@dataclass
class MasterEntry:
    """One SKU of the cost master."""
    sku: str
    product_name: str = ""
    unit_cost: float = 0.0

    def to_record(self) -> Dict:
        return {"sku": self.sku, "product_name": self.product_name, "unit_cost": self.unit_cost}


@dataclass
class NormalizedRow:
    """A settlement line mapped onto the canonical shape."""
    source_record: Dict
    order_id: str
    sku: str
    amount: float
    quantity: float
    posted_date: Optional[str]
    posted_date_time: Optional[str]
    transaction_type: str
    master_product_name: str = ""
    master_unit_cost: float = 0.0

    def to_record(self) -> Dict:
        return {
            "order_id": self.order_id,
            "sku": self.sku,
            "quantity": self.quantity,
            "amount": self.amount,
            "posted_date": self.posted_date,
            "posted_date_time": self.posted_date_time,
            "transaction_type": self.transaction_type,
            "master_product_name": self.master_product_name,
            "master_unit_cost": self.master_unit_cost,
            "raw": dict(self.source_record),
        }


@dataclass
class SkuOrderDetail:
    order_id: str
    sku: str
    quantity_in_order: float
    unit_cost: float

    @property
    def cost_missing(self) -> bool:
        return not self.unit_cost > 0

    @property
    def total_cost(self) -> float:
        return self.unit_cost * self.quantity_in_order

    def to_record(self) -> Dict:
        return {
            "order_id": self.order_id,
            "sku": self.sku,
            "quantity_in_order": self.quantity_in_order,
            "unit_cost": self.unit_cost,
            "cost_missing": self.cost_missing,
            "total_cost": self.total_cost,
        }


@dataclass
class OrderSummary:
    """One aggregated record per order id."""
    order_id: str
    order_type: str
    date: str = ""
    skus: List[str] = field(default_factory=list)
    total_quantity: float = 0.0
    total_amount: float = 0.0
    order_cost: float = 0.0
    missing_cost_sku_count: int = 0
    product_names: List[str] = field(default_factory=list)
    sku_name_pairs: List[str] = field(default_factory=list)

    @property
    def final_amount(self) -> float:
        return self.total_amount - self.order_cost

    @property
    def is_negative_order(self) -> bool:
        # Refunds are expected to be negative and are not flagged
        return self.final_amount < 0 and self.order_type == "Order"

    def to_record(self) -> Dict:
        return {
            "date": self.date,
            "order_id": self.order_id,
            "type": self.order_type,
            "skus": ", ".join(self.skus),
            "total_quantity": self.total_quantity,
            "total_amount": self.total_amount,
            "order_cost": self.order_cost,
            "final_amount": self.final_amount,
            "missing_cost_sku_count": self.missing_cost_sku_count,
            "product_names": ", ".join(self.product_names),
            "sku_name_pairs": ", ".join(self.sku_name_pairs),
        }


# --- Helpers ---
def _unwrap(record: Any) -> Tuple[Mapping, Mapping]:
    """Split a stored row into (spreadsheet columns, outer record).

    Persisted rows keep the original columns under ``raw`` next to a few
    canonical fields; plain spreadsheet rows are their own raw record.
    """
    if not isinstance(record, Mapping):
        raise TypeError(f"Expected a mapping record, got {type(record).__name__}")
    raw = record.get("raw")
    if isinstance(raw, Mapping):
        return raw, record
    return record, record


def _lookup(raw: Mapping, outer: Mapping, candidates: List[str]) -> Any:
    value = resolve_field(raw, candidates, skip_blank=True)
    if value is MISSING and outer is not raw:
        value = resolve_field(outer, candidates, skip_blank=True)
    return value


def _date_cell(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def _require_sequence(rows: Any, name: str) -> Sequence:
    if rows is None:
        return []
    if isinstance(rows, (str, bytes, Mapping)) or not isinstance(rows, (Sequence, list, tuple)):
        raise TypeError(f"{name} must be a sequence of records, got {type(rows).__name__}")
    return rows


# --- Pipeline stages ---
def parse_master_record(record: Mapping) -> MasterEntry:
    """Resolve SKU, product name and unit cost of one master row (SKU may come back empty)."""
    raw, outer = _unwrap(record)
    name = _lookup(raw, outer, MASTER_ALIASES["name"])
    return MasterEntry(
        sku=clean_text(_lookup(raw, outer, MASTER_ALIASES["sku"])),
        product_name="" if name is MISSING else clean_text(name),
        unit_cost=safe_number(_lookup(raw, outer, MASTER_ALIASES["cost"])),
    )


def build_master_index(master_records: Sequence) -> Dict[str, MasterEntry]:
    """Map trimmed SKU -> MasterEntry. Rows without a SKU are dropped; the last duplicate wins."""
    index: Dict[str, MasterEntry] = {}
    for record in _require_sequence(master_records, "master_records"):
        entry = parse_master_record(record)
        if entry.sku:
            index[entry.sku] = entry
    return index


def classify_order_type(rows: List[NormalizedRow]) -> str:
    """Refund beats Order; no tags at all means Order; otherwise join the tags."""
    types = {row.transaction_type.strip() for row in rows if row.transaction_type.strip()}
    if any("Refund" in t for t in types):
        return "Refund"
    if any("Order" in t for t in types):
        return "Order"
    if not types:
        return "Order"
    return ",".join(sorted(types))


def earliest_date(rows: List[NormalizedRow]) -> str:
    """Earliest parseable posting timestamp of an order, '' if none parse."""
    stamps = []
    for row in rows:
        cell = row.posted_date or row.posted_date_time
        ts = parse_timestamp(cell)
        if ts is not None:
            stamps.append(ts)
    if not stamps:
        return ""
    return format_timestamp(min(stamps))


def group_orders(rows: List[NormalizedRow]) -> Dict[str, List[NormalizedRow]]:
    groups: Dict[str, List[NormalizedRow]] = {}
    for row in rows:
        groups.setdefault(row.order_id or UNKNOWN_ORDER_ID, []).append(row)
    return groups


def resolve_sku_quantities(rows: List[NormalizedRow]) -> Dict[str, float]:
    """Per-SKU quantity of one order: the max over its lines, never the sum.

    The same SKU shows up on several settlement lines (item price, shipping,
    later adjustments), each repeating the purchased quantity.
    """
    quantities: Dict[str, float] = {}
    for row in rows:
        if not row.sku:
            continue
        if row.sku not in quantities or quantities[row.sku] < row.quantity:
            quantities[row.sku] = row.quantity
    return quantities


class SettlementReconciler:
    """
    Reconciles settlement rows of one marketplace against a cost master.

    Stateless between calls: every ``analyze`` builds its own master index
    and returns fresh tables.
    """

    def __init__(self, marketplace: str = DEFAULT_MARKETPLACE):
        self.marketplace = marketplace.strip().lower()
        self.aliases = get_marketplace_aliases(self.marketplace)

    def normalize_row(self, record: Mapping, master_index: Dict[str, MasterEntry]) -> NormalizedRow:
        raw, outer = _unwrap(record)
        aliases = self.aliases

        sku = clean_text(_lookup(raw, outer, aliases["sku"]))
        if not sku:
            description = _lookup(raw, outer, aliases["description"])
            sku = extract_sku_from_text(description)

        order_id = clean_text(_lookup(raw, outer, aliases["order_id"])) or UNKNOWN_ORDER_ID
        transaction_type = _lookup(raw, outer, aliases["transaction_type"]) if aliases["transaction_type"] else MISSING
        master = master_index.get(sku)

        return NormalizedRow(
            source_record=dict(raw),
            order_id=order_id,
            sku=sku,
            amount=safe_number(_lookup(raw, outer, aliases["amount"])),
            quantity=safe_number(_lookup(raw, outer, aliases["quantity"])),
            posted_date=_date_cell(_lookup(raw, outer, aliases["posted_date"])),
            posted_date_time=_date_cell(_lookup(raw, outer, aliases["posted_date_time"])),
            transaction_type="" if transaction_type is MISSING else str(transaction_type).strip(),
            master_product_name=master.product_name if master else "",
            master_unit_cost=master.unit_cost if master else 0.0,
        )

    def aggregate_order(
        self,
        order_id: str,
        rows: List[NormalizedRow],
        sku_quantities: Dict[str, float],
        master_index: Dict[str, MasterEntry],
    ) -> Tuple[OrderSummary, List[SkuOrderDetail]]:
        summary = OrderSummary(
            order_id=order_id,
            order_type=classify_order_type(rows),
            date=earliest_date(rows),
            skus=list(sku_quantities),
            total_amount=sum(row.amount for row in rows),
            total_quantity=sum(sku_quantities.values()),
        )

        details = []
        for sku, quantity in sku_quantities.items():
            master = master_index.get(sku)
            unit_cost = master.unit_cost if master else 0.0
            detail = SkuOrderDetail(order_id=order_id, sku=sku, quantity_in_order=quantity, unit_cost=unit_cost)
            details.append(detail)

            summary.order_cost += detail.total_cost
            if detail.cost_missing:
                summary.missing_cost_sku_count += 1
            name = master.product_name if master else ""
            if name:
                summary.product_names.append(name)
            summary.sku_name_pairs.append(f"{sku}:{name}")

        return summary, details

    def analyze(self, raw_rows: Sequence, master_rows: Sequence) -> Dict:
        """Run the full pipeline and return ``{"summary_tables": ..., "totals": ...}``."""
        master_index = build_master_index(master_rows)
        normalized = [self.normalize_row(r, master_index) for r in _require_sequence(raw_rows, "raw_rows")]
        groups = group_orders(normalized)

        unknown_rows = len(groups.get(UNKNOWN_ORDER_ID, []))
        if unknown_rows:
            logger.info(f"{unknown_rows} {self.marketplace} rows had no order id and were grouped as {UNKNOWN_ORDER_ID}")

        summaries: List[OrderSummary] = []
        details: List[SkuOrderDetail] = []
        for order_id, rows in groups.items():
            summary, order_details = self.aggregate_order(
                order_id, rows, resolve_sku_quantities(rows), master_index
            )
            summaries.append(summary)
            details.extend(order_details)

        order_summary = [s.to_record() for s in summaries]
        order_unique_skus = [d.to_record() for d in details]

        settlement_skus = {row.sku for row in normalized if row.sku}
        inactive = [
            {
                "sku": sku,
                "product_name": entry.product_name,
                "unit_cost": entry.unit_cost,
                "last_order_date": None,
                "reason": INACTIVE_REASON,
            }
            for sku, entry in master_index.items()
            if sku not in settlement_skus
        ]
        inactive_summary = [{
            "total_master_skus": len(master_index),
            "skus_with_no_orders_in_file": len(inactive),
            "percent_inactive": round(len(inactive) / max(1, len(master_index)) * 100, 2),
        }]

        missing_cost = [d.to_record() for d in details if d.cost_missing]
        if missing_cost:
            missing_skus = sorted({d.sku for d in details if d.cost_missing})
            logger.info(f"{len(missing_skus)} SKUs without a positive unit cost: {', '.join(missing_skus[:20])}")

        logger.info(
            f"Reconciled {len(normalized)} {self.marketplace} rows into {len(summaries)} orders "
            f"({len(master_index)} master SKUs, {len(inactive)} inactive)"
        )

        return {
            "summary_tables": {
                "order_summary": order_summary,
                "order_unique_skus": order_unique_skus,
                "raw_concat": [row.to_record() for row in normalized],
                "sku_map": [entry.to_record() for entry in master_index.values()],
                "negative_orders": [s.to_record() for s in summaries if s.is_negative_order],
                "missing_cost_orders": missing_cost,
                "inactive_skus": inactive,
                "inactive_sku_summary": inactive_summary,
            },
            "totals": build_totals(order_summary),
        }


def analyze(raw_rows: Sequence, master_rows: Sequence, marketplace: str = DEFAULT_MARKETPLACE) -> Dict:
    """Reconcile one settlement upload against the master snapshot."""
    return SettlementReconciler(marketplace).analyze(raw_rows, master_rows)
