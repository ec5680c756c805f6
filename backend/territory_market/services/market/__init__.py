"""Market domain services: wallet ledger, auctions, ownership and settlement.

Routes, socket handlers and CLI commands construct these with an explicit
session, cache and clock; nothing in here reaches for ambient globals or
knows about HTTP.
"""
