"""
PNP Market Settler.

Indexes prediction markets created on the PNP factory contract, waits until
each one has ended, asks an AI oracle for the outcome and settles the market
on-chain. All state lives in a local SQLite store with a write-ahead journal
so the settler can be restarted at any point without losing or repeating work.
"""

__version__ = "0.1.0"
