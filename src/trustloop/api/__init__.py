"""HTTP API for trustloop."""
