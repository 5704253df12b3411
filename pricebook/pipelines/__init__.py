"""Pipelines for message intake, entity resolution, quote ingestion and price aggregation.

Each step is callable on its own so the webhook, manual entry and batch
runs share the same code.
"""
