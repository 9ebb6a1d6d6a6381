"""Shared infrastructure: configuration, logging, schemas, queue and storage ports."""
