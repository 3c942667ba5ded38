"""Indicator engine and market regime classifier."""
