"""
Capacity ledger: the only writer of ``Occurrence.booked_count``.

Both operations are a single conditional UPDATE evaluated by the database, so
two requests racing for the last seat cannot both observe it as free. They join
the caller's transaction; booking and promotion commit the seat together with
the registration that owns it.
"""

from dataclasses import dataclass
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..repositories.occurrence_repository import OccurrenceRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReserveResult:
    reserved: bool
    new_count: Optional[int] = None


class CapacityLedger:
    def __init__(self, db: Session, occurrence_repository: Optional[OccurrenceRepository] = None):
        self.db = db
        self.occurrences = occurrence_repository or OccurrenceRepository(db)

    def try_reserve(self, occurrence_id: str) -> ReserveResult:
        new_count = self.occurrences.increment_if_available(occurrence_id)
        if new_count is None:
            logger.debug("No seat available", extra={"occurrence_id": occurrence_id})
            return ReserveResult(reserved=False)
        return ReserveResult(reserved=True, new_count=new_count)

    def release(self, occurrence_id: str) -> Optional[int]:
        new_count = self.occurrences.decrement(occurrence_id)
        if new_count is None:
            logger.warning(
                "Capacity release found nothing to release",
                extra={"occurrence_id": occurrence_id},
            )
        return new_count
