"""
New-arrival monitoring service package.

This package contains modules for fetching a retailer's "new arrivals"
page, detecting products never seen before, locking scheduled runs and
notifying subscribers by email and SMS.  See README.md for details.
"""

__all__ = [
    "config",
    "db",
    "differ",
    "emailer",
    "guards",
    "lock",
    "main",
    "notifier",
    "pipeline",
    "scraper",
    "server",
    "sms",
    "utils",
]
