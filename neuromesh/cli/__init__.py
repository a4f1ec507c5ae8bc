"""neuromesh command line — thin adapters over neuromesh.api."""
