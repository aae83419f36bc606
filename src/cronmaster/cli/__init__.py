"""CronMaster CLI."""
