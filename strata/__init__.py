"""
Strata - declarative cloud resource provisioning.

Reads resource declarations, builds a dependency graph and reconciles
a cloud account with it through plan and apply.
"""

try:
    from importlib.metadata import PackageNotFoundError, version
    try:
        __version__ = version("strata")
    except PackageNotFoundError:
        # Package not installed, fallback to pyproject.toml
        __version__ = "0.4.0"
except ImportError:
    __version__ = "0.4.0"

__author__ = "Strata Contributors"
