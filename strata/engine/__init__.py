"""
Strata Engine - Planning and applying change-sets.
"""

from strata.engine.applier import Applier
from strata.engine.engine import Engine
from strata.engine.planner import Planner, RefreshReport

__all__ = [
    "Applier",
    "Engine",
    "Planner",
    "RefreshReport",
]
