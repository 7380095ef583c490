"""
HealthVault: encrypted health-record storage with ledger-enforced access control.

Records are encrypted under an identity-bound policy with threshold key
servers, stored in a content-addressed blob store, and referenced from an
append-only ledger that also holds the authorization state machine.
"""

__version__ = "0.1.0"
