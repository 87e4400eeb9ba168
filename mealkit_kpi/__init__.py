"""Marketing KPIs for the meal-kit delivery campaign dataset."""

__version__ = "0.1.0"
