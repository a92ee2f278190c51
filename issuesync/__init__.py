"""GitHub issue synchronization and analytics service"""

__version__ = "1.0.0"
