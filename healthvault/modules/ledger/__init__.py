"""Ledger-side record objects, contract emulation and the registrar."""
