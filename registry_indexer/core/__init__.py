"""Ingestion engine components."""
