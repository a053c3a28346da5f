"""
Read-side helpers over stored analysis results.

A stored result is a dict with ``id``, ``upload_id``, ``marketplace``,
``filename``, ``created_at``, ``totals`` and ``summary_tables`` (see
settlement_store). Nothing here touches the database.
"""

from typing import Dict, List, Optional

from settlement_fields import safe_number
from settlement_pnl import split_skus


def _orders(result: Dict) -> List[Dict]:
    return (result.get("summary_tables") or {}).get("order_summary") or []


def _money_totals(rows: List[Dict]) -> Dict:
    return {
        "sales": sum(safe_number(r.get("total_amount")) for r in rows),
        "cogs": sum(safe_number(r.get("order_cost")) for r in rows),
        "profit": sum(safe_number(r.get("final_amount")) for r in rows),
    }


def list_results(results: List[Dict]) -> List[Dict]:
    """Newest first: id, upload id, filename, order count, created at."""
    files = [
        {
            "id": r.get("id"),
            "upload_id": r.get("upload_id"),
            "marketplace": r.get("marketplace"),
            "filename": r.get("filename") or "",
            "rows_count": (r.get("totals") or {}).get("order_count", 0),
            "created_at": r.get("created_at"),
        }
        for r in results
    ]
    files.sort(key=lambda f: str(f["created_at"] or ""), reverse=True)
    return files


def result_summary(result: Dict) -> Dict:
    totals = result.get("totals") or {}
    return {
        "filename": result.get("filename") or "",
        "total_orders": totals.get("order_count", 0),
        "total_sales": totals.get("sales", 0),
        "total_cogs": totals.get("cogs", 0),
        "total_profit": totals.get("net_profit", 0),
        "rows": _orders(result),
    }


def filter_options(result: Dict) -> Dict:
    """Distinct values offered by the order filters, in first-seen order."""
    rows = _orders(result)
    skus = list(dict.fromkeys(sku for r in rows for sku in split_skus(r.get("skus"))))
    types = list(dict.fromkeys(r.get("type") for r in rows if r.get("type")))
    dates = list(dict.fromkeys(r.get("date") for r in rows if r.get("date")))
    return {
        "skus": skus,
        "types": types,
        "dates": dates,
        "marketplaces": [result.get("marketplace") or "amazon"],
    }


def filter_orders(
    result: Dict,
    sku: Optional[str] = None,
    order_type: Optional[str] = None,
    date: Optional[str] = None,
) -> Dict:
    """Filter the order summary and total what is left.

    sku matches anywhere in the comma-joined SKU list, type ignores case and
    surrounding whitespace, date must match exactly.
    """
    rows = list(_orders(result))
    if sku:
        rows = [r for r in rows if sku in str(r.get("skus") or "")]
    if order_type:
        wanted = order_type.strip().lower()
        rows = [r for r in rows if str(r.get("type") or "").strip().lower() == wanted]
    if date:
        rows = [r for r in rows if str(r.get("date") or "").strip() == date.strip()]

    filtered = {"count": len(rows)}
    filtered.update(_money_totals(rows))
    filtered["rows"] = rows
    return filtered


def sheet_rows(result: Dict, name: str) -> List[Dict]:
    return (result.get("summary_tables") or {}).get(name) or []
