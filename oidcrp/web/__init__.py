"""Flask integration of the relying-party flows."""
