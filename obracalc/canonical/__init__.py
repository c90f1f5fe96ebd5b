"""Text, unit and number normalisation shared by ingestion and matching."""
