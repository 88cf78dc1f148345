"""Control loop server modules."""
