"""
Utility modules for the core facility backend.

This package contains shared helpers used across the application, chiefly
facility-timezone datetime handling.
"""

from utils.datetime_utils import facility_now, to_facility_naive

__all__ = ['facility_now', 'to_facility_naive']
