from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional, Sequence, Any

from errors import ValidationError
from models import CENT


def psf_split(
    total_amount: Decimal,
    unit_amount: Decimal,
    ancestors: Sequence[str],
    max_levels: Optional[int] = None,
) -> Dict[str, Any]:
    """
    total_amount: Decimal, the approved PSF payment (e.g. 500)
    unit_amount: Decimal, fixed credit per ancestor (e.g. 30)
    ancestors: [parent, grandparent, ..., root] of the payer, nearest first

    returns {"credits": [(ancestor_id, depth, amount), ...], "company": Decimal}

    ancestors are paid nearest-first while the payment still covers a full
    unit (and while depth <= max_levels if given). whatever is left goes to
    the company share, so credits + company == total_amount.
    """
    total = Decimal(total_amount).quantize(CENT, rounding=ROUND_DOWN)
    unit = Decimal(unit_amount).quantize(CENT, rounding=ROUND_DOWN)

    if unit <= 0:
        raise ValidationError(f"unit_amount must be positive, got {unit_amount}")
    if total < unit:
        raise ValidationError(
            f"total_amount ({total}) must cover at least one unit ({unit})"
        )

    credits: List[tuple] = []
    remaining = total
    for depth, ancestor_id in enumerate(ancestors, start=1):
        if max_levels is not None and depth > max_levels:
            break
        if remaining < unit:
            break
        credits.append((ancestor_id, depth, unit))
        remaining -= unit

    return {
        "credits": credits,
        "company": remaining,
    }
