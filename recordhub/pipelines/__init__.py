"""Ingestion pipeline: normalization, entity resolution, batching and dispatch.

Each step is callable on its own so the worker process and the tests can
drive it without the HTTP layer.
"""
