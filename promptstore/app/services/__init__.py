"""Business services: metadata and blob stores, bulk deletion."""
