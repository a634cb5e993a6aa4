"""
cronsentinel

Liveness monitor for external cron jobs, driven by their confirmation emails.
"""

__version__ = "0.3.0"
