"""
Discount Bracket Resolver

Pure functions over an ordered bracket list. Brackets partition quantity
space: sorted by order, the first starts at 0, each next minimum is the
previous maximum + 1, and only the last is unbounded.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from .models import BracketResolution, DiscountBracket
from .protocols import BracketConfigurationError

PERCENT_QUANTUM = Decimal("0.01")
MAX_PROGRESS = Decimal("99.99")


def sort_brackets(brackets: Sequence[DiscountBracket]) -> List[DiscountBracket]:
    return sorted(brackets, key=lambda b: b.bracket_order)


def validate_bracket_partition(brackets: Sequence[DiscountBracket]) -> List[DiscountBracket]:
    """
    Check that brackets form a contiguous, ascending, non-overlapping partition.

    Returns the brackets sorted by order.

    Raises:
        BracketConfigurationError: describing the first violation found
    """
    if not brackets:
        raise BracketConfigurationError("At least one discount bracket is required")

    ordered = sort_brackets(brackets)

    orders = [b.bracket_order for b in ordered]
    if len(set(orders)) != len(orders):
        raise BracketConfigurationError("Bracket order values must be unique")

    if ordered[0].min_quantity != 0:
        raise BracketConfigurationError(
            f"First bracket must start at 0, got {ordered[0].min_quantity}"
        )

    for index, bracket in enumerate(ordered):
        if bracket.unit_price <= 0:
            raise BracketConfigurationError(
                f"Bracket {bracket.bracket_order} unit price must be positive"
            )

        is_last = index == len(ordered) - 1
        if is_last:
            if bracket.max_quantity is not None:
                raise BracketConfigurationError("Final bracket must have no upper bound")
            continue

        if bracket.max_quantity is None:
            raise BracketConfigurationError(
                f"Only the final bracket may be unbounded (bracket {bracket.bracket_order})"
            )
        if bracket.max_quantity < bracket.min_quantity:
            raise BracketConfigurationError(
                f"Bracket {bracket.bracket_order} max {bracket.max_quantity} is below min {bracket.min_quantity}"
            )

        following = ordered[index + 1]
        if following.min_quantity != bracket.max_quantity + 1:
            raise BracketConfigurationError(
                f"Bracket {following.bracket_order} must start at {bracket.max_quantity + 1}, "
                f"got {following.min_quantity}"
            )

    return ordered


def progress_toward(current: DiscountBracket, next_bracket: DiscountBracket, quantity: int) -> Decimal:
    """Percent of the way from current.min to next.min, 2 places, kept below 100"""
    span = next_bracket.min_quantity - current.min_quantity
    if span <= 0:
        raise BracketConfigurationError(
            f"Bracket {next_bracket.bracket_order} does not start above bracket {current.bracket_order}"
        )

    progress = (Decimal(quantity - current.min_quantity) * 100 / Decimal(span)).quantize(
        PERCENT_QUANTUM, rounding=ROUND_HALF_UP
    )
    if progress < 0:
        return Decimal("0.00")
    return min(progress, MAX_PROGRESS)


def resolve_bracket(brackets: Sequence[DiscountBracket], quantity: int) -> BracketResolution:
    """
    Find the tier containing quantity, the tier after it, and progress toward it.

    Raises:
        BracketConfigurationError: empty list, quantity below the first
            minimum, or a quantity no bracket covers
    """
    if not brackets:
        raise BracketConfigurationError("Campaign has no discount brackets")

    ordered = sort_brackets(brackets)
    if quantity < ordered[0].min_quantity:
        raise BracketConfigurationError(
            f"Quantity {quantity} is below the first bracket minimum {ordered[0].min_quantity}"
        )

    for index, bracket in enumerate(ordered):
        if not bracket.contains(quantity):
            continue

        next_bracket: Optional[DiscountBracket] = ordered[index + 1] if index + 1 < len(ordered) else None
        progress = progress_toward(bracket, next_bracket, quantity) if next_bracket else None
        return BracketResolution(
            quantity=quantity,
            current_bracket=bracket,
            next_bracket=next_bracket,
            progress_percentage=progress,
        )

    raise BracketConfigurationError(f"No bracket covers quantity {quantity}")


def discount_percentage(base_price: Decimal, price: Decimal) -> Decimal:
    """Whole-percent discount of price against base_price"""
    if base_price <= 0:
        return Decimal("0")
    return ((base_price - price) * 100 / base_price).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
