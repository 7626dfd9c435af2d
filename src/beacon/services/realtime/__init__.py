"""Live connection handling and push delivery."""
