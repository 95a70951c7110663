"""
bt - A command-line interface for the Bitbucket Cloud API.

This package provides the HTTP client core used by every bt command:
authentication across several credential schemes, request execution with
retry and rate-limit handling, pagination over list endpoints, and a typed
error taxonomy.
"""

__version__ = "0.1.0"
__description__ = "A command-line interface for the Bitbucket Cloud API"

# Package-level imports for convenience
from bt.core.exceptions import BitbucketError, BTError, ErrorType

__all__ = [
    "__version__",
    "__description__",
    "BTError",
    "BitbucketError",
    "ErrorType",
]
