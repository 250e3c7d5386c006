"""Rate sources, per-provider runtime, registry and aggregation."""
