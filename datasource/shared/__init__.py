"""Shared configuration, schema, messaging and observability helpers."""
