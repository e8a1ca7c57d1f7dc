"""Checkpointing, logging, metrics and retry helpers."""
