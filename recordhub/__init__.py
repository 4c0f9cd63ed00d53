"""Backend package: DB models, ingestion pipeline, workers, API.

This package turns uploaded policy spreadsheets into cross-referenced
records, runs the scheduled message processor and watches CPU load.
"""
