"""Gifter job orchestration & collection curation backend.

Having this file ensures the 'gifter_jobs' directory is recognized as a
standard Python package during test discovery and installation.
"""

__all__: list[str] = []
