"""
Inbox Triage - async summary, draft and refinement pipeline for email review.

Generates summaries and reply drafts in a bounded pool, serializes
refinements per email, and hands results to the reviewer in priority order.
"""

__version__ = "0.1.0"
