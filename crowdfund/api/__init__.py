"""HTTP API for campaigns and donations."""
