"""Tree consistency and batch operation engine."""
