"""
Email → Classification → Extraction → Verified, deduplicated invoice records

A lease-based intake pipeline that processes each source document exactly once,
keeps an audit trail for every run, scores duplicates before persisting, and
sweeps stuck work into a dead-letter state for operators.
"""

__version__ = "0.1.0"
