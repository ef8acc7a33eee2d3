"""Eligibility filter: which pending items may be dispatched this pass.

The filter is recomputed from the full item list on every pass, so a
restarted driver needs no record of what an earlier pass selected.
"""

from typing import List, Optional, Sequence

from .models import Item


def eligible(items: Sequence[Item], scope_size: Optional[int] = None) -> List[Item]:
    """Select the items eligible for dispatch, in list order.

    Args:
        items: The job's full, ordered item list
        scope_size: Optional cap on the number of items returned

    Returns:
        Non-terminal items up to (not including) the first wait-chained item
        that follows an already-selected one. Empty when every item is
        terminal.

    Rules:
    - Terminal items are skipped.
    - A `wait_for_previous` item is never selected in the same pass as an
      earlier item, so it only goes out once its predecessor is terminal.
    """
    if scope_size is not None and scope_size < 1:
        raise ValueError(f"scope_size must be >= 1, got {scope_size}")

    selected: List[Item] = []
    for item in items:
        if item.is_terminal:
            continue
        if selected and item.wait_for_previous:
            break
        selected.append(item)

    if scope_size is not None:
        return selected[:scope_size]
    return selected
