"""
Strata Configuration Constants.

Centralized defaults for paths, limits and retry behaviour.
"""

from pathlib import Path

# Paths
DEFAULT_HOME = Path.home() / ".strata"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.yaml"
DEFAULT_STATE_PATH = DEFAULT_HOME / "state.db"
DEFAULT_LOCAL_CLOUD_PATH = DEFAULT_HOME / "local_cloud.json"
DEFAULT_LOG_DIR = DEFAULT_HOME / "logs"

# Environment
ENV_PREFIX = "STRATA_"
VAR_ENV_PREFIX = "STRATA_VAR_"

# Apply
DEFAULT_MAX_WORKERS = 4
MAX_WORKERS_LIMIT = 64

# Retry (seconds)
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0

# Declarations
DECLARATION_SUFFIXES = (".yaml", ".yml")
ADDRESS_TAG = "strata:address"
