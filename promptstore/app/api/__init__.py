"""HTTP routers for promptstore."""
