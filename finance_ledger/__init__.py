"""
Finance Ledger - Source Package

The transaction ledger and recurring-transaction engine of a
personal-finance tracker.

DESIGN PRINCIPLES:
1. Every transaction's financial effect is applied as one unit of work
2. Reverse is the exact algebraic inverse of Apply
3. Fail early, fail visibly - no partial success is ever reported
4. Every committed mutation is auditable
5. Storage layer is swappable and passed in explicitly
"""

__version__ = "1.0.0"
__author__ = "Finance Ledger Team"
