"""Request middleware and route dependencies."""
