"""Pure trigger predicates deciding when the strategy leaves its wait phases."""
from __future__ import annotations

from decimal import Decimal

from analysis.rational import RationalLike, multiply, round_rational, to_rational

HUNDRED = Decimal(100)


def sell_trigger_met(current_supply: RationalLike, sell_threshold: RationalLike) -> bool:
    """Strictly above the sell threshold; equality does not trigger."""
    return to_rational(current_supply) > to_rational(sell_threshold)


def supply_below_buy_trigger(current_supply: RationalLike, buy_threshold: RationalLike) -> bool:
    return to_rational(current_supply) < to_rational(buy_threshold)


def price_below_target(current_price: RationalLike, target_price: RationalLike) -> bool:
    return to_rational(current_price) < to_rational(target_price)


def buy_trigger_met(
    current_supply: RationalLike,
    buy_threshold: RationalLike,
    current_price: RationalLike,
    target_price: RationalLike,
) -> bool:
    """
    Both bounds must hold on the same sample.

    The strategy samples the price only after supply is already below the
    buy threshold, then confirms the pair of readings here.
    """
    return supply_below_buy_trigger(current_supply, buy_threshold) and price_below_target(
        current_price, target_price
    )


def target_buy_price(
    execution_price: RationalLike,
    fall_percent: RationalLike,
    places: int | None = None,
) -> Decimal:
    """
    Price the token must fall below before buying back.

    ``execution_price * (1 - fall_percent / 100)``, computed exactly. When
    ``places`` is given the result is rounded to that many decimals, matching
    how the price is rendered against the token's precision.
    """
    fall = to_rational(fall_percent)
    if fall < 0 or fall > HUNDRED:
        raise ValueError(f"fall percent must be within 0-100, got {fall}")
    proportion = 1 - fall.scaleb(-2)
    target = multiply(execution_price, proportion)
    if places is not None:
        target = round_rational(target, places)
    return target
