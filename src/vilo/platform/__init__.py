"""
Vilo Platform - subscription lifecycle automation.

Background jobs that move tenant subscriptions through trials, failed-payment
grace periods, renewal reminders and usage-limit checks, plus the manual
actions admins use to override them.
"""

__version__ = "1.0.0"
__author__ = "Vilo Team"


def get_version() -> str:
    """Get platform version."""
    return __version__
