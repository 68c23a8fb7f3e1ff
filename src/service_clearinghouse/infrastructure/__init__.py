"""Infrastructure — database, locks, notification channels and Redis."""
