"""Checkpointed job orchestration for lesson ingestion pipelines."""

__version__ = "0.1.0"
