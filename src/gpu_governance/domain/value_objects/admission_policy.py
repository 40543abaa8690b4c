"""Admission policies selectable by configuration."""

from __future__ import annotations

from enum import Enum


class AdmissionPolicy(Enum):
    """How a team may exceed its nominal share."""
    STRICT_QUOTA = "strict_quota"                  # Never beyond nominal share
    BORROW_WITH_LIMIT = "borrow_with_limit"        # Borrow idle units up to the borrowing limit
    PRIORITY_PREEMPTIVE = "priority_preemptive"    # Borrow, and reclaim borrowed units for higher priority

    @property
    def allows_borrowing(self) -> bool:
        return self is not AdmissionPolicy.STRICT_QUOTA

    @property
    def allows_preemption(self) -> bool:
        return self is AdmissionPolicy.PRIORITY_PREEMPTIVE
