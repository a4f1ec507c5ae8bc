"""Station event bus."""
