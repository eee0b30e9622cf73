"""
Body Tracker - Local-first body metrics log.

Stores daily body metrics and training phases locally, derives rolling
averages, adherence streaks and phase progress, and replicates the data to a
single remote JSON document.
"""

__version__ = "0.1.0"
