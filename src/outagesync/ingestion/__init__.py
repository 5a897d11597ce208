"""Ingestion layer.

This package contains the code that turns source rows into validated
records: bulk snapshots, demo data and value normalization.
"""

__all__: list[str] = []
