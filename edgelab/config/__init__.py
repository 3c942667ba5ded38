"""Application settings and strategy configuration models."""
