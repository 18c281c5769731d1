# PRD: Citadel Risk - Threat Intelligence Driven Risk Core
# Reference: docs/ARCHITECTURE.md
#
# Feed connectors -> ingestion pipeline -> correlation -> scoring ->
# dynamic risk lifecycle.

__version__ = "0.1.0"
