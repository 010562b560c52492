"""HTTP surface: handoff and search routers plus request-id middleware."""
