"""HTTP surface for reading-interval ingestion and book ranking."""
