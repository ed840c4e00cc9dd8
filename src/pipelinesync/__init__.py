"""
PipelineSync - CRM pipeline workbooks with preserved annotations.

Fetches deals from the CRM, rewrites per-owner and per-group Excel
stores without losing human notes, flags or highlighting, and keeps
notes (owner -> group) and flags/highlighting (group -> owner) in sync.
"""

__version__ = "1.0.0"
