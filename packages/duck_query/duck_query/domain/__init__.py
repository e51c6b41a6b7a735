"""Domain layer: entities, events, interfaces and exceptions."""
