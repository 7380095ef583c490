"""Audit trail projection and its read-only HTTP API."""
