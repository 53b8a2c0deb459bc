"""Small helpers shared across the sync services."""
