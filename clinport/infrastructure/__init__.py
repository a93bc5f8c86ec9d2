"""Infrastructure layer for Clinport: configuration, settings and logging."""
