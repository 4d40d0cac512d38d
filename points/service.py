import logging
import threading
from datetime import datetime
from typing import Any, Union

from .allocation import aggregate_balances, allocate_spend
from .errors import InsufficientBalanceError
from .models import AddPointsRequest, PayerPoints, SpendRequest
from .storage import LedgerStore

logger = logging.getLogger(__name__)


class LedgerService:
    """Records grants, spends points oldest-first, and reports per-payer balances."""

    def __init__(self, store: LedgerStore):
        self.store = store
        self._spend_lock = threading.Lock()

    def record_grant(self, payer: Any, points: Any, timestamp: Union[str, datetime, None]) -> int:
        request = AddPointsRequest.from_payload({"payer": payer, "points": points, "timestamp": timestamp})

        grant_id = self.store.insert(request.payer, request.points, request.timestamp)
        logger.info(
            "grant_recorded",
            extra={"payer": request.payer, "points": request.points, "grant_id": grant_id},
        )
        return grant_id

    def spend(self, points: Any) -> list[PayerPoints]:
        request = SpendRequest.from_payload({"points": points})

        # Snapshot, allocation and every write happen under one lock and one
        # store transaction, so concurrent spends cannot both consume a grant
        # and a failed write leaves the ledger untouched.
        with self._spend_lock, self.store.transaction():
            snapshot = self.store.get_all_ordered_by_timestamp()
            try:
                plan = allocate_spend(snapshot, request.points)
            except InsufficientBalanceError as e:
                logger.info("spend_rejected", extra={"points": e.requested, "available": e.available})
                raise

            for deduction in plan.deductions:
                self.store.update_points(deduction.grant_id, deduction.remaining_points)

        logger.info(
            "points_spent",
            extra={"points": request.points, "grants_touched": len(plan.deductions)},
        )
        return plan.payer_points()

    def get_balance(self) -> dict[str, int]:
        return aggregate_balances(self.store.get_all_ordered_by_timestamp())
