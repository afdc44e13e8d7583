"""
Remindi - recurring billing and reminder scheduling engine.

This package derives, from a subscription's billing configuration and
payment history:
- The authoritative next charge date (anchor-day aware calendar math)
- The subscription's lifecycle status (active / overdue / ended)
- Which reminders are due, deduplicated and dispatched ahead of that date
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get engine version."""
    return __version__
