# Threadline API Utilities
"""
Shared utility functions for Threadline API services.
"""

from api.utils.datetime_utils import make_aware, parse_datetime

__all__ = ["make_aware", "parse_datetime"]
