"""Kafka worker that refreshes denormalized read-page counts."""
