"""
Rule-driven table ingestion engine

Moves tabular data from message attachments, remote workbook tables or the
local control workbook into destination tables according to user-defined
rules, verifies every transfer, and keeps a session-correlated audit log.
"""

__version__ = "0.1.0"
