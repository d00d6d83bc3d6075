"""OfflineSync - budgeted content synchronization for offline targets."""

__version__ = "0.1.0"
