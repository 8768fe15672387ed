"""Domain models and index schema."""
