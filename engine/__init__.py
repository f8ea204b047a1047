"""
Coverage aggregation engine: benefit templates, source hydration, the
coverage query engine and the per-identity selection store.
"""
