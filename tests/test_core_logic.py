"""Unit tests for grouping, trends, aggregation, and report orchestration."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from unittest.mock import Mock

import pytest

from sales_bonus import bonus_rules, constants, core_logic
from sales_bonus.data_manager import Dataset, Product, Seller


def _options(strategy=None, revenue_function=core_logic.calculate_item_profit, top_products=10):
    if strategy is None:
        strategy = core_logic.AggregateBonusStrategy(rules=(bonus_rules.bonus_largest_single_sale,))
    return core_logic.ReportOptions(
        revenue_function=revenue_function,
        bonus_strategy=strategy,
        top_products=top_products,
    )


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


def test_group_by_preserves_order_within_groups():
    """Items should keep their input order inside each group."""

    groups = core_logic.group_by([1, 2, 3, 4, 5, 6], lambda value: value % 3)

    assert groups == {1: [1, 4], 2: [2, 5], 0: [3, 6]}
    assert list(groups) == [1, 2, 0]


def test_group_by_is_partition_complete(sample_dataset):
    """No record should be dropped or duplicated by grouping."""

    records = sample_dataset.purchase_records
    groups = core_logic.group_by(records, lambda entry: entry.seller_id)

    assert sum(len(group) for group in groups.values()) == len(records)
    assert [entry.receipt_id for entry in groups["S1"]] == ["R1", "R3"]


def test_group_by_empty_input_returns_empty_mapping():
    """An empty input should produce an empty mapping."""

    assert core_logic.group_by([], lambda value: value) == {}


@pytest.mark.parametrize("bad_input", ["abc", {"a": 1}, 42])
def test_group_by_rejects_non_sequences(bad_input):
    """Strings, mappings, and scalars are not row collections."""

    with pytest.raises(TypeError):
        core_logic.group_by(bad_input, lambda value: value)


# ---------------------------------------------------------------------------
# Trend analysis
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "samples, expected",
    [
        ([5], (True, False, False)),
        ([], (True, False, False)),
        ([1, 1, 1], (True, False, False)),
        ([1, 10], (False, True, False)),
        ([10, 1], (False, False, True)),
        ([100, 102, 104], (True, True, False)),
        ([100, 104, 110], (False, True, False)),
        ([1.0, 1.04], (True, True, False)),
    ],
)
def test_analyze_sequence_classifies_series(samples, expected):
    """Stability and direction should follow first/last and step checks."""

    result = core_logic.analyze_sequence(samples)

    assert (result.is_stable, result.is_increasing, result.is_decreasing) == expected


def test_analyze_sequence_zero_previous_sample_is_unstable():
    """A step away from zero has infinite relative change."""

    result = core_logic.analyze_sequence([0, 1])

    assert result.is_stable is False
    assert result.is_increasing is True


def test_analyze_sequence_zero_to_zero_stays_stable():
    """0/0 is not a number and never exceeds the tolerance."""

    result = core_logic.analyze_sequence([0, 0])

    assert result.is_stable is True
    assert result.is_increasing is False


def test_analyze_sequence_honours_custom_tolerance():
    """A wider tolerance should accept larger steps."""

    assert core_logic.analyze_sequence([100, 120], tolerance=Decimal("0.25")).is_stable is True
    assert core_logic.analyze_sequence([100, 120], tolerance=Decimal("0.10")).is_stable is False


def test_analyze_sequence_direction_ignores_intermediate_dips():
    """Direction only compares the last sample with the first."""

    result = core_logic.analyze_sequence([10, 5, 11])

    assert result.is_increasing is True
    assert result.is_stable is False


def test_analyze_sequence_rejects_non_sequence():
    """A scalar is not a series."""

    with pytest.raises(TypeError):
        core_logic.analyze_sequence(5)


def test_calculate_average_handles_empty_values():
    """An empty list averages to zero instead of dividing by zero."""

    assert core_logic.calculate_average([]) == Decimal("0")
    assert core_logic.calculate_average([Decimal("1"), Decimal("2")]) == Decimal("1.5")


# ---------------------------------------------------------------------------
# Revenue functions
# ---------------------------------------------------------------------------


def test_simple_revenue_applies_discount_multiplicatively(make_item):
    """A 10% discount should scale the gross amount by 0.9."""

    product = Product("P", Decimal("20"))
    line = make_item("P", "50", 2, "10")

    assert core_logic.calculate_simple_revenue(line, product) == Decimal("90")


def test_item_profit_subtracts_purchase_cost(make_item):
    """Profit is discounted revenue minus purchase price times quantity."""

    product = Product("P", Decimal("20"))
    line = make_item("P", "50", 2, "10")

    assert core_logic.calculate_item_profit(line, product) == Decimal("50")


def test_resolve_revenue_function_rejects_unknown_name():
    """Unknown names should surface as configuration errors."""

    assert core_logic.resolve_revenue_function("revenue") is core_logic.calculate_simple_revenue
    with pytest.raises(core_logic.ConfigurationError):
        core_logic.resolve_revenue_function("margin")


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def test_aggregate_statistics_builds_seller_totals(sample_stats):
    """Seller totals should add up every line item they sold."""

    s1 = sample_stats.sellers["S1"]
    s2 = sample_stats.sellers["S2"]

    assert (s1.revenue, s1.profit, s1.sale_count, len(s1.items)) == (Decimal("130"), Decimal("65"), 2, 3)
    assert s1.products_sold == {"P1": 2, "P2": 9}
    assert s1.customer_ids == {"C1", "C2"}
    assert (s2.revenue, s2.profit, s2.sale_count) == (Decimal("90"), Decimal("50"), 1)
    assert "S3" not in sample_stats.sellers


def test_aggregate_statistics_builds_customer_and_product_totals(sample_stats):
    """Customer and product mappings should be filled in the same pass."""

    c1 = sample_stats.customers["C1"]

    assert (c1.revenue, c1.profit) == (Decimal("190"), Decimal("120"))
    assert list(c1.seller_ids) == ["S1", "S2"]
    assert sample_stats.products["P2"].quantity == 9
    assert sample_stats.products["P3"].revenue == Decimal("90")


def test_aggregate_statistics_conserves_revenue(sample_stats):
    """Every revenue unit belongs to exactly one seller and one customer."""

    seller_total = sum(stats.revenue for stats in sample_stats.sellers.values())
    customer_total = sum(stats.revenue for stats in sample_stats.customers.values())
    product_total = sum(stats.revenue for stats in sample_stats.products.values())

    assert seller_total == customer_total == product_total == Decimal("220")


def test_aggregate_statistics_uses_injected_revenue_function(sample_dataset):
    """Profit should be whatever the injected function returns."""

    stats = core_logic.aggregate_statistics(
        sample_dataset.purchase_records,
        core_logic.calculate_simple_revenue,
        sample_dataset.products,
    )

    assert stats.sellers["S1"].profit == stats.sellers["S1"].revenue == Decimal("130")


def test_aggregate_statistics_rejects_unknown_sku(sample_dataset, make_record, make_item):
    """A dangling SKU is a fatal data-integrity error."""

    records = sample_dataset.purchase_records + (
        make_record("R9", "2024-03-01", "S1", "C1", "5", [make_item("NOPE", "5", 1)]),
    )

    with pytest.raises(core_logic.MissingReferenceError) as excinfo:
        core_logic.aggregate_statistics(records, core_logic.calculate_item_profit, sample_dataset.products)

    assert isinstance(excinfo.value, LookupError)
    assert "NOPE" in str(excinfo.value)


def test_aggregate_statistics_rejects_duplicate_skus(sample_dataset):
    """Two catalogue entries sharing a SKU make lookups ambiguous."""

    products = sample_dataset.products + (Product("P1", Decimal("1")),)

    with pytest.raises(core_logic.ConfigurationError):
        core_logic.aggregate_statistics(sample_dataset.purchase_records, core_logic.calculate_item_profit, products)


def test_aggregate_statistics_rejects_non_sequence_records(sample_dataset):
    """Records must be supplied as a sequence."""

    with pytest.raises(TypeError):
        core_logic.aggregate_statistics("R1", core_logic.calculate_item_profit, sample_dataset.products)


def test_merge_statistics_matches_single_pass(sample_dataset, sample_stats):
    """Merging shard statistics should equal aggregating everything at once."""

    records = sample_dataset.purchase_records
    shards = [records[:1], records[1:]]
    parts = [
        core_logic.aggregate_statistics(shard, core_logic.calculate_item_profit, sample_dataset.products)
        for shard in shards
    ]

    merged = core_logic.merge_statistics(parts)

    for seller_id, expected in sample_stats.sellers.items():
        actual = merged.sellers[seller_id]
        assert (actual.revenue, actual.profit, actual.sale_count) == (expected.revenue, expected.profit, expected.sale_count)
        assert actual.products_sold == expected.products_sold
        assert actual.customer_ids == expected.customer_ids
    assert list(merged.customers["C1"].seller_ids) == ["S1", "S2"]
    assert merged.products["P2"].quantity == sample_stats.products["P2"].quantity


def test_top_products_sorted_descending_with_stable_ties():
    """Equal quantities keep first-seen SKU order."""

    stats = core_logic.SellerStats(products_sold={"A": 1, "B": 5, "C": 5, "D": 3})

    assert [entry.sku for entry in stats.top_products()] == ["B", "C", "D", "A"]


# ---------------------------------------------------------------------------
# Options and validation
# ---------------------------------------------------------------------------


def test_report_options_require_revenue_function():
    """A missing revenue function is a configuration error."""

    with pytest.raises(core_logic.ConfigurationError, match="revenue_function"):
        _options(revenue_function=None)


def test_report_options_require_known_strategy_variant():
    """Bare callables are not accepted in place of a strategy variant."""

    with pytest.raises(core_logic.ConfigurationError, match="bonus_strategy"):
        core_logic.ReportOptions(revenue_function=core_logic.calculate_item_profit, bonus_strategy=lambda ctx: None)
    with pytest.raises(core_logic.ConfigurationError, match="bonus_strategy"):
        core_logic.ReportOptions(revenue_function=core_logic.calculate_item_profit, bonus_strategy=None)


def test_aggregate_strategy_requires_rules():
    """An aggregate strategy without rules cannot award anything."""

    with pytest.raises(core_logic.ConfigurationError):
        core_logic.AggregateBonusStrategy(rules=())


def test_report_options_expose_ordering_mode():
    """Each strategy variant declares how rows are ordered."""

    aggregate = _options()
    rank = _options(core_logic.RankBonusStrategy(bonus_function=bonus_rules.calculate_bonus_by_profit))

    assert aggregate.ordering is constants.OrderingMode.INPUT
    assert rank.ordering is constants.OrderingMode.PROFIT_RANK


@pytest.mark.parametrize("field_name", ["sellers", "products", "purchase_records"])
def test_analyze_sales_data_rejects_empty_collections(monkeypatch, sample_dataset, field_name):
    """Empty required collections fail before aggregation begins."""

    aggregate = Mock()
    monkeypatch.setattr(core_logic, "aggregate_statistics", aggregate)
    dataset = replace(sample_dataset, **{field_name: ()})

    with pytest.raises(core_logic.ConfigurationError, match=field_name):
        core_logic.analyze_sales_data(dataset, _options())

    aggregate.assert_not_called()


def test_analyze_sales_data_rejects_missing_collection(sample_dataset):
    """A missing collection names the absent field."""

    dataset = replace(sample_dataset, purchase_records=None)

    with pytest.raises(core_logic.ConfigurationError, match="purchase_records"):
        core_logic.analyze_sales_data(dataset, _options())


def test_analyze_sales_data_rejects_non_sequence_collection(sample_dataset):
    """A string is not a valid seller collection."""

    dataset = replace(sample_dataset, sellers="S1")

    with pytest.raises(TypeError):
        core_logic.analyze_sales_data(dataset, _options())


def test_analyze_sales_data_requires_options(sample_dataset):
    """Running without options is a configuration error."""

    with pytest.raises(core_logic.ConfigurationError):
        core_logic.analyze_sales_data(sample_dataset, None)


# ---------------------------------------------------------------------------
# Report assembly
# ---------------------------------------------------------------------------


def test_analyze_sales_data_single_sale_end_to_end(make_record, make_item):
    """One seller selling two units at 20 with cost 10 earns 40 revenue, 20 profit."""

    dataset = Dataset(
        sellers=(Seller("S1", "Solo", "Seller"),),
        products=(Product("P1", Decimal("10")),),
        purchase_records=(make_record("R1", "2024-05-01", "S1", "C1", "40", [make_item("P1", "20", 2)]),),
    )

    report = core_logic.analyze_sales_data(dataset, _options())
    (row,) = report.rows

    assert row.revenue == Decimal("40.00")
    assert row.profit == Decimal("20.00")
    assert row.bonus == Decimal("4.00")
    assert row.sale_count == 1
    assert row.name == "Solo Seller"
    assert [product.to_dict() for product in row.top_products] == [{"sku": "P1", "quantity": 2}]


def test_analyze_sales_data_rounds_only_at_assembly(make_record, make_item):
    """Three 0.665 line items total 1.995, which rounds to 2.00 (not 2.01)."""

    dataset = Dataset(
        sellers=(Seller("S1", "Late", "Rounder"),),
        products=(Product("P1", Decimal("0")),),
        purchase_records=(
            make_record(
                "R1",
                "2024-05-01",
                "S1",
                "C1",
                "3",
                [make_item("P1", "1.00", 1, "33.5") for _ in range(3)],
            ),
        ),
    )

    report = core_logic.analyze_sales_data(dataset, _options())

    assert report.rows[0].revenue == Decimal("2.00")
    assert report.rows[0].profit == Decimal("2.00")


def test_analyze_sales_data_caps_top_products(make_record, make_item):
    """Fifteen distinct SKUs should yield exactly ten top products."""

    products = tuple(Product(f"P{index:02d}", Decimal("1")) for index in range(1, 16))
    items = [make_item(f"P{index:02d}", "2", index) for index in range(1, 16)]
    dataset = Dataset(
        sellers=(Seller("S1", "Many", "Skus"),),
        products=products,
        purchase_records=(make_record("R1", "2024-05-01", "S1", "C1", "240", items),),
    )

    report = core_logic.analyze_sales_data(dataset, _options())
    top = report.rows[0].top_products

    assert len(top) == 10
    assert [entry.quantity for entry in top] == list(range(15, 5, -1))


def test_analyze_sales_data_aggregate_mode_keeps_input_order(sample_dataset):
    """Aggregate rules keep sellers in input order and sum their awards."""

    strategy = bonus_rules.resolve_bonus_strategy(constants.BonusMode.AGGREGATE)

    report = core_logic.analyze_sales_data(sample_dataset, _options(strategy))

    assert report.ordering is constants.OrderingMode.INPUT
    assert [row.seller_id for row in report.rows] == ["S1", "S2", "S3"]
    bonuses = {row.seller_id: row.bonus for row in report.rows}
    assert bonuses == {"S1": Decimal("1019.50"), "S2": Decimal("5.00"), "S3": Decimal("0.00")}
    assert len(report.outcomes) == 5
    assert len(report.awards) == 4


def test_analyze_sales_data_includes_idle_sellers(sample_dataset):
    """A seller without receipts still gets a zeroed row."""

    report = core_logic.analyze_sales_data(sample_dataset, _options())
    idle = report.rows[2]

    assert (idle.seller_id, idle.revenue, idle.profit, idle.sale_count, idle.top_products) == (
        "S3",
        Decimal("0.00"),
        Decimal("0.00"),
        0,
        (),
    )


def test_analyze_sales_data_rank_mode_orders_by_profit(sample_dataset):
    """Rank rules order rows by descending profit and pay by position."""

    strategy = core_logic.RankBonusStrategy(bonus_function=bonus_rules.calculate_bonus_by_profit)

    report = core_logic.analyze_sales_data(sample_dataset, _options(strategy))

    assert report.ordering is constants.OrderingMode.PROFIT_RANK
    assert [(row.seller_id, row.bonus) for row in report.rows] == [
        ("S1", Decimal("9.75")),
        ("S2", Decimal("5.00")),
        ("S3", Decimal("0.00")),
    ]
    assert all(award.category is constants.BonusCategory.PROFIT_RANK for award in report.awards)


def test_analyze_sales_data_propagates_dangling_sku(sample_dataset, make_record, make_item):
    """No partial report is produced when a SKU cannot be resolved."""

    dataset = replace(
        sample_dataset,
        purchase_records=sample_dataset.purchase_records
        + (make_record("R9", "2024-03-01", "S2", "C2", "1", [make_item("GHOST", "1", 1)]),),
    )

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.analyze_sales_data(dataset, _options())


def test_report_row_to_dict_matches_output_contract(sample_dataset):
    """Serialized rows expose the documented keys with 2dp numbers."""

    report = core_logic.analyze_sales_data(sample_dataset, _options())
    payload = report.rows[0].to_dict()

    assert payload == {
        "seller_id": "S1",
        "name": "Ivan Petrov",
        "revenue": 130.0,
        "profit": 65.0,
        "bonus": 10.0,
        "sale_count": 2,
        "top_products": [{"sku": "P2", "quantity": 9}, {"sku": "P1", "quantity": 2}],
    }


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def test_ensure_schema_version_rejects_mismatch(runtime_context):
    """Schema mismatches should surface a RuntimeError."""

    bad_settings = replace(runtime_context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, dataset=runtime_context.dataset)

    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_load_runtime_context_reads_configured_dataset(runtime_context):
    """The context should carry the workbook rows named in config.ini."""

    assert [seller.seller_id for seller in runtime_context.dataset.sellers] == ["S1", "S2", "S3"]
    assert runtime_context.settings.bonus_mode is constants.BonusMode.AGGREGATE
