"""Pre-flight checks and base image acquisition."""
