"""
Package marker for source code under `src.pricing_engine`.
It groups the quote pipeline, its caches, and its collaborators under a stable import path.
Most functionality lives in the sibling modules; this file intentionally stays lightweight.
"""
