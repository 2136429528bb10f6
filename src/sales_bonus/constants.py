"""Enumerations and tunables shared across the sales bonus modules.

Centralises domain constants so that the data access layer, the aggregation
engine, the bonus rules, and the command line can rely on a single source of
truth for labels, rates, and sheet names.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

TOP_PRODUCTS_LIMIT = 10
TREND_TOLERANCE = Decimal("0.05")
MONEY_QUANTUM = Decimal("0.01")

BEST_CUSTOMER_RATE = Decimal("0.05")
RETENTION_FIXED_BONUS = Decimal("1000")
LARGEST_SALE_RATE = Decimal("0.10")
AVERAGE_PROFIT_RATE = Decimal("0.10")
STABLE_GROWTH_RATE = Decimal("0.15")

# Rank-based family: first place, the two runners-up, last place, everyone else.
RANK_TOP_RATE = Decimal("0.15")
RANK_RUNNER_UP_RATE = Decimal("0.10")
RANK_LAST_RATE = Decimal("0")
RANK_DEFAULT_RATE = Decimal("0.05")


class BonusCategory(str, Enum):
    """Enumerate the award labels produced by the aggregate bonus rules."""

    BEST_CUSTOMER_SELLER = "Best Customer Seller"
    CUSTOMER_RETENTION = "Best Customer Retention"
    LARGEST_SINGLE_SALE = "Largest Single Sale"
    HIGHEST_AVERAGE_PROFIT = "Highest Average Profit"
    STABLE_GROWTH = "Stable Growth"
    PROFIT_RANK = "Profit Rank"


class BonusMode(str, Enum):
    """Enumerate the two bonus rule families a report can run with."""

    AGGREGATE = "aggregate"
    RANK = "rank"


class OrderingMode(str, Enum):
    """Enumerate how report rows are ordered."""

    INPUT = "input"
    PROFIT_RANK = "profit_rank"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    SELLERS = "Sellers"
    CUSTOMERS = "Customers"
    PRODUCTS = "Products"
    PURCHASE_RECORDS = "PurchaseRecords"
    PURCHASE_ITEMS = "PurchaseItems"
    REPORT = "Report"
    AWARDS = "Awards"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TOP_PRODUCTS_LIMIT",
    "TREND_TOLERANCE",
    "MONEY_QUANTUM",
    "BEST_CUSTOMER_RATE",
    "RETENTION_FIXED_BONUS",
    "LARGEST_SALE_RATE",
    "AVERAGE_PROFIT_RATE",
    "STABLE_GROWTH_RATE",
    "RANK_TOP_RATE",
    "RANK_RUNNER_UP_RATE",
    "RANK_LAST_RATE",
    "RANK_DEFAULT_RATE",
    "BonusCategory",
    "BonusMode",
    "OrderingMode",
    "SheetName",
]
