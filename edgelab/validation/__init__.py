"""Walk-forward, sensitivity and Monte-Carlo validators."""
