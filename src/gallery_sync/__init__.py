"""Gallery Sync - Materialize a remote case gallery into a local content store."""

import logging
import warnings

__version__ = "0.1.0"
__author__ = "Gallery Sync Team"
__license__ = "Apache-2.0"

# Suppress verbose third-party library logging
# These libraries generate excessive console output that clutters sync progress
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpcore.connection").setLevel(logging.WARNING)
logging.getLogger("httpcore.http11").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

warnings.filterwarnings("ignore", category=DeprecationWarning, module="httpx")
