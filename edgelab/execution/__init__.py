"""Position lifecycle: ROI table, trailing stop and position manager."""
