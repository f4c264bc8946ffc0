"""Chain access layer - contract reads, log queries and subscriptions."""
