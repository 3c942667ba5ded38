"""Risk filters applied to opening signals."""
