from decimal import Decimal, ROUND_HALF_UP


def quantize_money(value: Decimal | float | int | str | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def movement_total_cost(unit_cost: Decimal | float | int | str | None, quantity: int) -> Decimal | None:
    """Cost of the units a movement moved; the sign of ``quantity`` is ignored."""
    unit = quantize_money(unit_cost)
    if unit is None:
        return None
    return quantize_money(unit * abs(quantity))
