"""Application layer: query client, services, options and retry policy."""
