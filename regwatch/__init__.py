"""
RegWatch - regulatory alert ingestion.

Polls government feeds, APIs and pages for recalls, warning letters,
enforcement actions and guidance, and turns them into a single
deduplicated, urgency-scored alert stream.
"""

__version__ = "0.1.0"
