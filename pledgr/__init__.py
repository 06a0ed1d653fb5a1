"""Pledgr: crowdfunding backend (campaigns, pledge levels, pledges, fee settlement)."""

__version__ = "1.0.0"
