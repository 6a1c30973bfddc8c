"""
Internet Banking Backend

Authentication, token lifecycle and transfer-approval engine for a retail
banking backend, with an append-only hash-chained audit trail.
"""

__version__ = "1.0.0"
