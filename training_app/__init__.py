"""Training management application package."""
