"""HTTP status API for the forwarder."""
