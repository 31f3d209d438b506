"""Prose synthesis over computed results."""
