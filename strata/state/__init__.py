"""
Strata State - Persisted resource state.

Records of applied resources, stored outputs and the apply journal
used to detect interrupted runs.
"""

from strata.state.models import FAILED_CREATE, JournalEntry, OutputValue, StateRecord
from strata.state.repository import StateRepository

__all__ = [
    "FAILED_CREATE",
    "JournalEntry",
    "OutputValue",
    "StateRecord",
    "StateRepository",
]
