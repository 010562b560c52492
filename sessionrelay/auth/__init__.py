"""Bearer-token authentication and per-address request caps."""
