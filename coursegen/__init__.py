"""CourseGen: transcript-to-course job orchestration."""

__version__ = "1.0.0"
