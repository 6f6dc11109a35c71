"""RecipeDB: database administration, backup and monitoring for the recipe catalog."""

__version__ = "1.0.0"
