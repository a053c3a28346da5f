"""Tests for the reconciliation engine: master index, normalization, order aggregation and diagnostics."""

import copy

import pytest

from settlement_config import INACTIVE_REASON, SUMMARY_TABLES
from settlement_reconcile import (
    SettlementReconciler,
    analyze,
    build_master_index,
    classify_order_type,
    resolve_sku_quantities,
)


def _orders(result):
    return {o["order_id"]: o for o in result["summary_tables"]["order_summary"]}


def _row(order_id, sku, amount, qty, date="2024-01-05", tx_type="Order"):
    return {
        "order-id": order_id,
        "sku": sku,
        "amount": amount,
        "quantity-purchased": qty,
        "posted-date": date,
        "transaction-type": tx_type,
    }


MASTER = [
    {"sku": "X1", "name": "Widget", "cog": 10},
    {"Seller SKU": "Y2", "Product Name": "Gadget", "COGS": "4.5"},
    {"sku": "Z9", "name": "Dormant", "cog": 3},
]


def test_end_to_end_single_order():
    raw = [
        {"order-id": "O1", "sku": "X1", "amount": 50, "quantity": 2},
        {"order-id": "O1", "sku": "X1", "amount": 5, "quantity": 2},
    ]
    result = analyze(raw, [{"sku": "X1", "name": "Widget", "cog": 10}])
    order = _orders(result)["O1"]

    assert order["total_amount"] == 55
    assert order["total_quantity"] == 2
    assert order["order_cost"] == 20
    assert order["final_amount"] == 35
    assert order["missing_cost_sku_count"] == 0
    assert order["type"] == "Order"
    assert order["skus"] == "X1"
    assert order["product_names"] == "Widget"
    assert order["sku_name_pairs"] == "X1:Widget"


def test_all_tables_present():
    result = analyze([_row("A", "X1", 10, 1)], MASTER)
    assert list(result["summary_tables"]) == SUMMARY_TABLES
    assert set(result["totals"]) >= {"sales", "cogs", "net_profit", "order_count"}


def test_final_amount_is_total_minus_cost():
    raw = [
        _row("A", "X1", 100, 3),
        _row("A", "Y2", 20.25, 1),
        _row("B", "Y2", 7.1, 2),
        _row("C", "NOPE", 12, 1),
    ]
    for order in analyze(raw, MASTER)["summary_tables"]["order_summary"]:
        assert round(order["final_amount"], 2) == round(order["total_amount"] - order["order_cost"], 2)


def test_sku_quantity_is_max_not_sum():
    raw = [_row("O1", "A", 10, 2), _row("O1", "A", 3, 5)]
    result = analyze(raw, [{"sku": "A", "cog": 1}])
    detail = result["summary_tables"]["order_unique_skus"]
    assert detail == [{
        "order_id": "O1",
        "sku": "A",
        "quantity_in_order": 5.0,
        "unit_cost": 1.0,
        "cost_missing": False,
        "total_cost": 5.0,
    }]
    assert _orders(result)["O1"]["total_quantity"] == 5


def test_resolve_sku_quantities_skips_blank_skus():
    reconciler = SettlementReconciler("amazon")
    rows = [
        reconciler.normalize_row({"order-id": "O", "sku": "A", "quantity": 1}, {}),
        reconciler.normalize_row({"order-id": "O", "quantity": 9}, {}),
    ]
    assert resolve_sku_quantities(rows) == {"A": 1.0}


def test_sku_falls_back_to_description_token():
    raw = [{"order-id": "O1", "amount-description": "Shipping for ABC-123 (gift)", "amount": 4}]
    result = analyze(raw, [])
    assert result["summary_tables"]["raw_concat"][0]["sku"] == "ABC-123"
    assert _orders(result)["O1"]["skus"] == "ABC-123"


def test_rows_without_order_id_group_as_unknown():
    raw = [{"sku": "X1", "amount": 5, "quantity": 1}, {"sku": "Y2", "amount": 6, "quantity": 1}]
    orders = _orders(analyze(raw, MASTER))
    assert list(orders) == ["UNKNOWN"]
    assert orders["UNKNOWN"]["total_amount"] == 11


def test_missing_cost_sku():
    raw = [_row("O1", "X1", 30, 1), _row("O1", "GHOST", 10, 2)]
    result = analyze(raw, MASTER)
    order = _orders(result)["O1"]

    assert order["order_cost"] == 10
    assert order["missing_cost_sku_count"] == 1
    missing = result["summary_tables"]["missing_cost_orders"]
    assert [(m["order_id"], m["sku"], m["cost_missing"], m["total_cost"]) for m in missing] == [
        ("O1", "GHOST", True, 0.0)
    ]


def test_zero_or_negative_master_cost_counts_as_missing():
    master = [{"sku": "FREE", "cog": 0}, {"sku": "ODD", "cog": -2}]
    result = analyze([_row("O1", "FREE", 5, 1), _row("O1", "ODD", 5, 1)], master)
    assert _orders(result)["O1"]["missing_cost_sku_count"] == 2
    assert len(result["summary_tables"]["missing_cost_orders"]) == 2


def test_inactive_skus():
    result = analyze([_row("O1", "X1", 30, 1)], MASTER)
    inactive = result["summary_tables"]["inactive_skus"]

    assert [i["sku"] for i in inactive] == ["Y2", "Z9"]
    assert all(i["last_order_date"] is None for i in inactive)
    assert all(i["reason"] == INACTIVE_REASON for i in inactive)
    assert result["summary_tables"]["inactive_sku_summary"] == [{
        "total_master_skus": 3,
        "skus_with_no_orders_in_file": 2,
        "percent_inactive": 66.67,
    }]


def test_refund_takes_priority_over_order():
    raw = [_row("R1", "X1", 40, 1, tx_type="Order"), _row("R1", "X1", -40, 1, tx_type="Refund")]
    result = analyze(raw, MASTER)
    assert _orders(result)["R1"]["type"] == "Refund"
    # refunds are expected to be negative
    assert result["summary_tables"]["negative_orders"] == []


@pytest.mark.parametrize("types,expected", [
    (["Order", "Refund"], "Refund"),
    (["Order", "ItemFees"], "Order"),
    (["", ""], "Order"),
    (["ServiceFee", "Adjustment", "ServiceFee"], "Adjustment,ServiceFee"),
    (["refund"], "refund"),
])
def test_classify_order_type(types, expected):
    reconciler = SettlementReconciler()
    rows = [reconciler.normalize_row({"order-id": "O", "transaction-type": t}, {}) for t in types]
    assert classify_order_type(rows) == expected


def test_negative_orders_only_for_plain_orders():
    raw = [
        _row("LOSS", "X1", 5, 1),
        _row("OK", "X1", 50, 1),
        _row("ADJ", "X1", -3, 1, tx_type="Adjustment"),
    ]
    result = analyze(raw, MASTER)
    assert [o["order_id"] for o in result["summary_tables"]["negative_orders"]] == ["LOSS"]


def test_order_date_is_earliest_timestamp():
    raw = [
        _row("O1", "X1", 10, 1, date="2024-01-07"),
        _row("O1", "X1", 1, 1, date="2024-01-03"),
        {"order-id": "O1", "sku": "X1", "amount": 1, "posted-date-time": "2024-01-04T10:00:00+00:00"},
        _row("O1", "X1", 1, 1, date="not a date"),
    ]
    assert _orders(analyze(raw, MASTER))["O1"]["date"] == "2024-01-03T00:00:00.000Z"


def test_order_date_empty_when_nothing_parses():
    raw = [_row("O1", "X1", 10, 1, date=""), _row("O1", "X1", 10, 1, date="n/a")]
    assert _orders(analyze(raw, MASTER))["O1"]["date"] == ""


def test_non_numeric_cells_coerce_to_zero():
    raw = [_row("O1", "X1", "N/A", "two"), _row("O1", "X1", "12.5", None)]
    order = _orders(analyze(raw, MASTER))["O1"]
    assert order["total_amount"] == 12.5
    assert order["total_quantity"] == 0


def test_master_index_aliases_and_duplicates():
    master = MASTER + [{"sku": "  X1 ", "name": "Widget v2", "cog": "11"}, {"sku": "", "cog": 5}]
    index = build_master_index(master)

    assert set(index) == {"X1", "Y2", "Z9"}
    assert index["X1"].product_name == "Widget v2"
    assert index["X1"].unit_cost == 11
    assert index["Y2"].unit_cost == 4.5
    assert index["Y2"].product_name == "Gadget"


def test_master_skus_are_case_sensitive():
    result = analyze([_row("O1", "x1", 10, 1)], MASTER)
    assert _orders(result)["O1"]["missing_cost_sku_count"] == 1


def test_numeric_identifiers_match_master():
    result = analyze([_row(1001.0, 5550.0, 10, 1)], [{"sku": 5550, "cog": 2}])
    order = _orders(result)["1001"]
    assert order["skus"] == "5550"
    assert order["order_cost"] == 2


def test_persisted_records_resolve_raw_first():
    stored = [
        {"raw": {"Order-Id": "P1", "SKU": "X1", "Amount": "20", "Quantity-Purchased": "1"}, "posted_date": "2024-05-02"},
    ]
    stored_master = [{"sku": "X1", "name": "Widget", "cog": 10.0, "raw": {"sku": "X1", "cog": "10"}}]
    result = analyze(stored, stored_master)
    order = _orders(result)["P1"]

    assert order["final_amount"] == 10
    assert order["date"] == "2024-05-02T00:00:00.000Z"
    assert result["summary_tables"]["raw_concat"][0]["raw"]["Order-Id"] == "P1"


def test_flipkart_aliases():
    raw = [
        {"Order ID": "F1", "SKU": "X1", "Total Amount": "300", "Quantity": "2", "order_date": "2024-02-01"},
        {"Order ID": "F1", "SKU": "X1", "Total Amount": "-20", "Quantity": "2", "order_date": "2024-02-03"},
    ]
    result = analyze(raw, MASTER, marketplace="flipkart")
    order = _orders(result)["F1"]

    assert order["type"] == "Order"
    assert order["total_amount"] == 280
    assert order["total_quantity"] == 2
    assert order["date"] == "2024-02-01T00:00:00.000Z"


def test_unknown_marketplace():
    with pytest.raises(ValueError):
        SettlementReconciler("etsy")


def test_empty_inputs_give_empty_tables():
    result = analyze([], [])
    tables = result["summary_tables"]

    for name in SUMMARY_TABLES:
        if name != "inactive_sku_summary":
            assert tables[name] == []
    assert tables["inactive_sku_summary"] == [
        {"total_master_skus": 0, "skus_with_no_orders_in_file": 0, "percent_inactive": 0.0}
    ]
    assert result["totals"]["sales"] == 0
    assert result["totals"]["order_count"] == 0
    assert analyze(None, None)["summary_tables"]["order_summary"] == []


def test_invalid_call_shapes_raise():
    with pytest.raises(TypeError):
        analyze("not rows", [])
    with pytest.raises(TypeError):
        analyze([{"order-id": "A"}], {"sku": "X1"})
    with pytest.raises(TypeError):
        analyze([42], [])


def test_analyze_is_deterministic_and_does_not_mutate_inputs():
    raw = [_row("A", "X1", 10, 1), _row("B", "Y2", -5, 1, tx_type="Refund"), _row("A", "GHOST", 3, 2)]
    raw_before = copy.deepcopy(raw)
    master_before = copy.deepcopy(MASTER)

    assert analyze(raw, MASTER) == analyze(raw, MASTER)
    assert raw == raw_before
    assert MASTER == master_before
