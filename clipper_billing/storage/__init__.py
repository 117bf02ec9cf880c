"""
Storage layer for subscriptions, usage counters and the usage audit trail.

Uses SQLite (WAL mode) as the transactional store. Every counter mutation is
an atomic SQL statement inside a BEGIN IMMEDIATE transaction.
"""

from clipper_billing.storage.database import (
    BillingDatabase,
    BillingEventApplication,
    ChargeApplication,
)

__all__ = ["BillingDatabase", "BillingEventApplication", "ChargeApplication"]
