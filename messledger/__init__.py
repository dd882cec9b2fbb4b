"""
Mess Ledger - Source Package

A shared-household ledger for flatmates: meal attendance, shopping,
utility bills, common expenses and deposits, settled per month.

DESIGN PRINCIPLES:
1. Settlement is a pure function of ledger rows
2. Every write that moves money is reversible
3. Closed months are frozen
4. Every write is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Mess Ledger Team"
