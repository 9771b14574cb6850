from decimal import Decimal, ROUND_HALF_UP

MONEY_QUANT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def weighted_average(pairs: list[tuple[int, Decimal]]) -> Decimal:
    """Quantity-weighted mean of unit amounts, rounded half-up to cents."""
    total_qty = sum(qty for qty, _ in pairs)
    if total_qty <= 0:
        return ZERO_MONEY
    total_value = sum((Decimal(qty) * Decimal(str(amount)) for qty, amount in pairs), ZERO_MONEY)
    return to_money(total_value / Decimal(total_qty))


def margin_pct(unit_price: Decimal, unit_cost: Decimal) -> Decimal:
    if unit_price <= 0:
        return ZERO_MONEY
    return to_money((Decimal(str(unit_price)) - Decimal(str(unit_cost))) * 100 / Decimal(str(unit_price)))
