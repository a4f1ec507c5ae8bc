"""Fitness scoring, mutation proposals and the periodic maturation cycle."""
