"""Domain core: entities, exceptions and ports."""
