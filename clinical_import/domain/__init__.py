"""Domain core: canonical models, value typing, validation and transformation."""
