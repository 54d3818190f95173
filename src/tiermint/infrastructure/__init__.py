"""Infrastructure adapters (database persistence)."""
