"""
Expense Tracker - Source Package

A household expense ledger: owners record bills against savings and
credit payment methods, and every balance follows the bills exactly.

DESIGN PRINCIPLES:
1. Balances only move through the ledger engine
2. Every mutation is atomic or not at all
3. Fail early, fail visibly
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Expense Tracker Team"
