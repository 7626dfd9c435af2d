"""External lookup services (geocoding and routing)."""
