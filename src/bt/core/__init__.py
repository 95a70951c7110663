"""
Core functionality for bt.

This package contains the API client core: credentials and their storage,
authentication, request execution with retries, pagination, configuration
management and exception handling.
"""

from bt.core.exceptions import AuthenticationError, BitbucketError, BTError, ErrorType

__all__ = ["BTError", "BitbucketError", "AuthenticationError", "ErrorType"]
