"""
Monthly P&L rollup and SKU leaderboards over order summaries.

Works on order summary records as stored (plain dicts), so it can run on a
freshly analyzed upload or on a persisted result. Everything accumulates at
full precision and is rounded to 2 decimals once, when records are emitted.

Refund detection here is looser than the order classification in the
reconciliation engine: an order counts as a refund when its type mentions
"refund" (any case) OR its final amount is negative.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from settlement_config import LEADERBOARD_TOP_N, PNL_TOP_N, UNKNOWN_SKU
from settlement_fields import month_key, safe_number


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def split_skus(value) -> List[str]:
    """Comma-joined SKU list of an order summary -> list of non-empty SKUs."""
    if not value:
        return []
    return [s.strip() for s in str(value).split(",") if s.strip()]


@dataclass
class PnlBucket:
    """Running totals for one month (or for the whole file)."""
    sales: float = 0.0
    units_sold: float = 0.0
    refund_amount: float = 0.0
    refund_count: int = 0
    cogs: float = 0.0
    net_profit: float = 0.0
    order_count: int = 0

    def add(self, sales: float, units: float, cogs: float, final: float, refund_amount: float, is_refund: bool):
        self.sales += sales
        self.units_sold += units
        self.cogs += cogs
        self.net_profit += final
        self.order_count += 1
        if is_refund:
            self.refund_amount += refund_amount
            self.refund_count += 1

    def to_record(self) -> Dict:
        gross_profit = self.sales - self.cogs
        return {
            "sales": round(self.sales, 2),
            "units_sold": round(self.units_sold, 2),
            "refund_amount": round(self.refund_amount, 2),
            "refund_count": self.refund_count,
            "cogs": round(self.cogs, 2),
            "gross_profit": round(gross_profit, 2),
            "net_profit": round(self.net_profit, 2),
            "average_selling_price": round(_ratio(self.sales, self.units_sold), 2),
            "gross_margin_pct": round(_ratio(gross_profit, self.sales) * 100, 2),
            "net_margin_pct": round(_ratio(self.net_profit, self.sales) * 100, 2),
            "refund_pct": round(_ratio(self.refund_amount, self.sales) * 100, 2),
            "sellable_return_pct": round(_ratio(self.refund_count, self.units_sold) * 100, 2),
        }


def _order_values(order: Dict) -> Tuple[float, float, float, float, bool, float]:
    sales = safe_number(order.get("total_amount"))
    units = safe_number(order.get("total_quantity"))
    cogs = safe_number(order.get("order_cost"))
    final = safe_number(order.get("final_amount"))
    is_refund = "refund" in str(order.get("type") or "").lower() or final < 0
    refund_amount = abs(final) if final < 0 else safe_number(order.get("refund_amount"))
    return sales, units, cogs, final, is_refund, refund_amount


def _order_date(order: Dict):
    return order.get("date") or order.get("posted_date") or order.get("posted_date_time") or ""


def rollup(order_summary: Iterable[Dict]) -> Tuple[List[Dict], Dict, Dict[str, Dict]]:
    """Bucket orders by month.

    Returns (months sorted by month key descending, totals, per-SKU stats).
    Multi-SKU orders are split equally across their SKUs, regardless of each
    SKU's own quantity in the order.
    """
    months: Dict[str, PnlBucket] = {}
    overall = PnlBucket()
    sku_stats: Dict[str, Dict] = {}

    for order in order_summary:
        sales, units, cogs, final, is_refund, refund_amount = _order_values(order)
        key = month_key(_order_date(order))
        months.setdefault(key, PnlBucket()).add(sales, units, cogs, final, refund_amount, is_refund)
        overall.add(sales, units, cogs, final, refund_amount, is_refund)

        skus = split_skus(order.get("skus")) or [UNKNOWN_SKU]
        count = len(skus)
        per_sku_units = units / count if units > 0 else 0.0
        for sku in skus:
            stat = sku_stats.setdefault(sku, {"quantity": 0.0, "sales": 0.0, "cogs": 0.0, "profit": 0.0, "refunds": 0})
            stat["quantity"] += per_sku_units
            stat["sales"] += sales / count
            stat["cogs"] += cogs / count
            stat["profit"] += final / count
            if is_refund:
                stat["refunds"] += 1

    month_records = [dict(month=key, **bucket.to_record()) for key, bucket in months.items()]
    month_records.sort(key=lambda m: m["month"], reverse=True)
    return month_records, build_totals_from_bucket(overall), sku_stats


def build_totals_from_bucket(bucket: PnlBucket) -> Dict:
    totals = bucket.to_record()
    totals["order_count"] = bucket.order_count
    return totals


def build_totals(order_summary: Iterable[Dict]) -> Dict:
    """Global totals of a set of order summaries (zeroed when empty)."""
    _, totals, _ = rollup(order_summary)
    return totals


def top_skus(sku_stats: Dict[str, Dict], metric: str, limit: int = PNL_TOP_N) -> List[Dict]:
    """Rank SKUs by 'quantity' or 'profit', descending; ties keep first-seen order."""
    if metric == "quantity":
        fields = ("quantity", "sales", "profit")
    elif metric == "profit":
        fields = ("profit", "sales", "quantity")
    else:
        raise ValueError(f"Unknown ranking metric: {metric}")

    # ranked on the 2-decimal values that are emitted, so near-ties keep first-seen order
    ranked = sorted(sku_stats.items(), key=lambda item: round(item[1][metric], 2), reverse=True)[:limit]
    rows = []
    for sku, stat in ranked:
        row = {"sku": sku}
        row.update({f: round(stat[f], 2) for f in fields})
        if metric == "quantity":
            row["refunds"] = stat["refunds"]
        rows.append(row)
    return rows


def monthly_report(order_summary: List[Dict]) -> Dict:
    """P&L view: monthly buckets, totals, and the top 20 SKUs by quantity and by profit."""
    order_summary = list(order_summary or [])
    months, totals, sku_stats = rollup(order_summary)
    return {
        "months": months,
        "totals": totals,
        "top_by_quantity": top_skus(sku_stats, "quantity", PNL_TOP_N),
        "top_by_profit": top_skus(sku_stats, "profit", PNL_TOP_N),
        "raw_count": len(order_summary),
    }


def leaderboard(order_summary: Iterable[Dict], metric: str = "quantity", limit: int = LEADERBOARD_TOP_N) -> List[Dict]:
    """Top SKUs for the dashboard leaderboard.

    Unlike the P&L view, every SKU listed on an order is credited with the
    whole order quantity (or profit).
    """
    source = {"quantity": "total_quantity", "profit": "final_amount"}.get(metric)
    if source is None:
        raise ValueError(f"Unknown ranking metric: {metric}")

    totals: Dict[str, float] = {}
    for order in order_summary:
        value = safe_number(order.get(source))
        for sku in split_skus(order.get("skus")):
            totals[sku] = totals.get(sku, 0.0) + value

    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [{"sku": sku, metric: round(value, 2)} for sku, value in ranked]
