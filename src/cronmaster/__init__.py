"""CronMaster - one scheduling entry point for many autonomous jobs."""

__version__ = "0.4.0"
