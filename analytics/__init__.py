"""Analytics core (UI-agnostic) for the NES dashboards.

This package contains:
- column resolution and record normalization (CSV rows -> canonical frames)
- the DuckDB analytical store and its Parquet/CSV loaders
- filter state, predicate building and aggregations
- the durable dataset cache and the debounced dashboard session
"""
