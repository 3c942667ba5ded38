"""Signal detection: rule conditions, plugin strategies, registry and ensemble."""
