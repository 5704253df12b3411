"""Backend package: storage, pipelines, APIs.

This package orchestrates message intake, quote extraction, entity
resolution and best-price aggregation for supplier price messages.
"""
