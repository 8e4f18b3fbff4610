"""HTTP API for running learning pathways."""
