"""
Duplicate Detector.

Tiered scoring of a candidate record against previously stored records.
"""

from .detector import CandidateMatch, DuplicateCheckResult, DuplicateDetector

__all__ = ["CandidateMatch", "DuplicateCheckResult", "DuplicateDetector"]
