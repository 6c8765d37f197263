"""Classification quality monitoring and alerting."""

from .monitor import ClassificationMonitor

__all__ = ["ClassificationMonitor"]
