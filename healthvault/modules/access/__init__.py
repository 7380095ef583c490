"""Authorization rules, access proofs and the access-control state machine."""
