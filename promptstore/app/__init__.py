"""FastAPI application package for promptstore."""
