"""Service layer: persistence, streaming, processing and notifications."""
