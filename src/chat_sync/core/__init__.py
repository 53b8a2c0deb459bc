"""Configuration, error taxonomy and logging helpers."""
