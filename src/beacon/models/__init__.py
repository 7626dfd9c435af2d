"""Domain models for Beacon."""
