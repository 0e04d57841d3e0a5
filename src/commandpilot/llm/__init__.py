"""Model client."""
