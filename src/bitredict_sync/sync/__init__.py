"""Event sync services and their shared retry/reconcile machinery."""
