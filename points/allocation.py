"""
Spend allocation and balance aggregation over a ledger snapshot.

Both functions are pure: they never touch the store, they only read the
grants they are given and return a value (or raise).
"""

from typing import Iterable, Sequence

from .errors import InsufficientBalanceError, ValidationError
from .models import Grant, GrantDeduction, SpendPlan


def aggregate_balances(snapshot: Iterable[Grant]) -> dict[str, int]:
    balances: dict[str, int] = {}
    for grant in snapshot:
        balances[grant.payer] = balances.get(grant.payer, 0) + grant.points
    return balances


def available_points(snapshot: Iterable[Grant]) -> int:
    return sum(grant.points for grant in snapshot if grant.points > 0)


def allocate_spend(snapshot: Sequence[Grant], requested_points: int) -> SpendPlan:
    """
    Decide how many points to take from each grant to cover a spend.

    Grants are consumed oldest timestamp first regardless of payer; grants
    sharing a timestamp keep their snapshot order. A grant is never taken
    below zero and exhausted grants are skipped. If the snapshot cannot
    cover the whole request, InsufficientBalanceError is raised and no plan
    is produced.
    """
    if isinstance(requested_points, bool) or not isinstance(requested_points, int) or requested_points <= 0:
        raise ValidationError("points", "points must be a positive integer!")

    available = available_points(snapshot)
    if available < requested_points:
        raise InsufficientBalanceError(requested_points, available)

    plan = SpendPlan(requested_points=requested_points)
    remaining = requested_points

    # sorted() is stable, so equal timestamps stay in retrieval order
    for grant in sorted(snapshot, key=lambda g: g.timestamp):
        if remaining <= 0:
            break
        if grant.points <= 0:
            continue

        deducted = min(remaining, grant.points)
        remaining -= deducted
        plan.deductions.append(GrantDeduction(
            grant_id=grant.id,
            payer=grant.payer,
            deducted=deducted,
            remaining_points=grant.points - deducted,
        ))
        plan.summary[grant.payer] = plan.summary.get(grant.payer, 0) - deducted

    return plan
