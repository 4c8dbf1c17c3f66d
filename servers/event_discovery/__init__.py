"""
Local Event Discovery Pipeline

This package provides:
- Acquiring candidate events via web search and venue/calendar page crawling
- Validating and correcting candidates with an external classification model
- Deduplicating candidates against previously stored events
- Tracking crawl source health and scheduling staggered discovery jobs

Jobs are persisted in a durable job table and executed by a worker pool.
"""

__version__ = "3.0.0"
