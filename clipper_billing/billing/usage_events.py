"""
Usage event log (append-only audit trail).

Consumed by analytics and by support when a customer disputes a charge or a
downgrade. Events are never updated or deleted.
"""

from datetime import datetime

from clipper_billing.models.usage import UsageEvent, UsageEventCreate, UsageEventPage, UsageEventType
from clipper_billing.storage.database import BillingDatabase


class UsageEventLog:
    """Append and query usage events."""

    def __init__(self, db: BillingDatabase, max_page_size: int = 200):
        self.db = db
        self.max_page_size = max_page_size

    async def append(self, event: UsageEventCreate, now: datetime | None = None) -> UsageEvent:
        return await self.db.insert_usage_event(event, now=now)

    async def query(
        self,
        user_id: str,
        event_type: UsageEventType | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> UsageEventPage:
        """
        Page through a user's events, newest first.

        Args:
            user_id: Event owner
            event_type: Only this type (optional)
            start: Inclusive lower bound on created_at (optional)
            end: Exclusive upper bound on created_at (optional)
            limit: Page size (1..max_page_size)
            offset: Events to skip

        Returns:
            UsageEventPage with the total matching count

        Raises:
            ValueError: Invalid paging arguments, range or event type
        """
        if limit < 1 or limit > self.max_page_size:
            raise ValueError(f"limit must be between 1 and {self.max_page_size}")
        if offset < 0:
            raise ValueError("offset must be non-negative")
        if start is not None and end is not None and start >= end:
            raise ValueError("start must be before end")

        if event_type is not None:
            event_type = UsageEventType(event_type)

        events = await self.db.list_usage_events(
            user_id, event_type=event_type, start=start, end=end, limit=limit, offset=offset
        )
        total = await self.db.count_usage_events(
            user_id, event_type=event_type, start=start, end=end
        )

        return UsageEventPage(events=events, total=total, limit=limit, offset=offset)
