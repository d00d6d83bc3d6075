"""HTTP status feed and control surface for the sync service."""
