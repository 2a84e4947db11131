"""genwatch - tracking, health classification and recovery for course-generation jobs."""

__version__ = "0.3.0"

__all__ = ["__version__"]
