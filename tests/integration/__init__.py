"""
Integration tests for the PNP Market Settler.

These tests verify that components work together correctly against a
temporary SQLite store, with the chain and oracle faked in memory.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
