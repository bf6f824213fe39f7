"""
Loan Servicing Engine

Amortization schedule generation, interest-first payment allocation and
nightly regulatory arrears classification with provisioning. All financial
math uses Decimal, and every state change leaves an audit trail.
"""

__version__ = "1.0.0"
