"""InsightVault - natural-language questions over tabular datasets."""

__version__ = "0.4.0"
