"""SessionRelay models package.

Shared data contracts used across the store, services and HTTP handlers:

  - handoff.py   — HandoffRecord, HandoffCredentials, ProfileSummary
  - errors.py    — RelayError hierarchy (stable machine-readable failure kinds)
  - responses.py — JSON error response builder for the HTTP boundary
"""
