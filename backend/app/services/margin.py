"""
Margin normalization.

Claims for the same product arrive with very different fill sizes: a 90-day
fill earns roughly three times the profit of a 30-day fill. Before claims can be
averaged or ranked, each claim's gross profit is scaled to a common unit:

  * per expected fill, when the trigger declares expected_qty
    (e.g. a box of 100 test strips);
  * per 30 days, when the trigger declares only expected_days_supply;
  * per whole 30-day month otherwise.

Claims too short to be representative are dropped (normalize_margin returns None).

Everything here is pure and independent of the database.
"""

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

ZERO = Decimal("0")
CENT = Decimal("0.01")
THIRTY = Decimal("30")

# Profit columns found in pharmacy-system exports, in order of preference
GROSS_PROFIT_KEYS = (
    "gross_profit", "Gross Profit", "grossprofit", "GrossProfit",
    "net_profit", "Net Profit", "netprofit", "NetProfit",
    "adj_profit", "Adj Profit", "adjprofit", "AdjProfit",
    "Adjusted Profit", "adjusted_profit",
)

DEFAULT_MIN_DAYS = 28
EXPECTED_QTY_MIN_DAYS = 20
MIN_DAYS_RATIO = Decimal("0.8")


@dataclass(frozen=True)
class NormalizedMargin:
    gp: Decimal
    qty: Decimal
    days_supply: int


def to_decimal(value) -> Decimal | None:
    """Parse numbers and money-formatted strings ("$1,234.50"). Returns None when unparseable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = str(value).replace("$", "").replace(",", "").strip()
    if not text:
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def extract_gross_profit(raw_data: dict | None) -> Decimal:
    """
    Derive a claim's gross profit from its raw export payload.

    The first non-zero explicit profit field wins; otherwise Price minus
    Actual Cost; otherwise zero.
    """
    if not raw_data:
        return ZERO
    for key in GROSS_PROFIT_KEYS:
        value = to_decimal(raw_data.get(key))
        if value is not None and value != ZERO:
            return value
    price = to_decimal(raw_data.get("Price")) or ZERO
    cost = to_decimal(raw_data.get("Actual Cost")) or ZERO
    return price - cost


def estimate_days_supply(days_supply: int | None, quantity: Decimal | None) -> int:
    """Recorded days supply, or a guess from the quantity dispensed."""
    if days_supply:
        return int(days_supply)
    qty = to_decimal(quantity) or ZERO
    if qty > 60:
        return 90
    if qty > 34:
        return 60
    return 30


def minimum_days(expected_qty, expected_days_supply) -> Decimal:
    if expected_days_supply:
        return Decimal(expected_days_supply) * MIN_DAYS_RATIO
    if expected_qty:
        return Decimal(EXPECTED_QTY_MIN_DAYS)
    return Decimal(DEFAULT_MIN_DAYS)


def normalize_margin(
    raw_gp,
    quantity,
    days_supply: int | None,
    expected_qty=None,
    expected_days_supply: int | None = None,
    *,
    enforce_min_days: bool = True,
) -> NormalizedMargin | None:
    """
    Scale one claim's gross profit to a comparable unit.

    Returns None when the claim is shorter than the minimum representative fill
    (80% of expected_days_supply, 20 days with only expected_qty, 28 days by
    default). Pass enforce_min_days=False to value a claim regardless.
    """
    gp = to_decimal(raw_gp) or ZERO
    qty = to_decimal(quantity) or ZERO
    exp_qty = to_decimal(expected_qty)
    est_days = estimate_days_supply(days_supply, qty)

    if enforce_min_days and Decimal(est_days) < minimum_days(exp_qty, expected_days_supply):
        return None

    if exp_qty:
        return NormalizedMargin(gp=gp * exp_qty / max(qty, Decimal(1)), qty=exp_qty, days_supply=est_days)

    if expected_days_supply:
        days = max(Decimal(est_days), Decimal(1))
        return NormalizedMargin(
            gp=gp * THIRTY / days, qty=(qty or Decimal(1)) * THIRTY / days, days_supply=est_days,
        )

    months = Decimal(max(math.ceil(est_days / 30), 1))
    return NormalizedMargin(gp=gp / months, qty=(qty or Decimal(1)) / months, days_supply=est_days)


def money(value: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(value).quantize(CENT)


def median(values: list[Decimal]) -> Decimal | None:
    """Median of the positive values; None when there are none."""
    positives = sorted(v for v in values if v is not None and v > 0)
    if not positives:
        return None
    mid = len(positives) // 2
    if len(positives) % 2:
        return positives[mid]
    return (positives[mid - 1] + positives[mid]) / 2
