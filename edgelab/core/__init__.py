"""Core data model, enumerations, exceptions and numeric helpers."""
