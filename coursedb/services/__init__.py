"""Service layer: persistence, ingestion, artifact caching and structured events."""
