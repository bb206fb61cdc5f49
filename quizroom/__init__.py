"""Live quiz sessions: join codes, real-time answers, results and analytics."""

__version__ = "1.0.0"
