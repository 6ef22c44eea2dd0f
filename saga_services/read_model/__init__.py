"""Read-model service."""
