"""Infrastructure layer: store, clock, logging, metrics and mirrors."""
