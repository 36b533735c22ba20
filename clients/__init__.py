"""
Form session clients and the fallback status checker.
"""

from .http_form_client import HttpFormClient
from .fallback_checker import FallbackStatusChecker

__all__ = ["HttpFormClient", "FallbackStatusChecker"]
