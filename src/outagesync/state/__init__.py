"""State/store layer.

This package is the single source of truth for how a bulk snapshot and
incoming change events are merged into the set of points a renderer
shows.
"""
