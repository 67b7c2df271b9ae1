"""
App Store Connect → TestFlight feedback → local triage database

Incrementally pulls crash reports and screenshot feedback submitted by
TestFlight testers, stores them in SQLite with strict deduplication,
backfills crash logs and screenshots as they become available, and tracks
a review status for every submission.
"""

__version__ = "0.2.0"
