"""Rules service application package."""
