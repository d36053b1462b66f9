"""Identity portal service."""
