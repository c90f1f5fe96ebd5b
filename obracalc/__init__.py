"""ObraCalc: construction price book ingestion and hybrid pricing resolution."""

__version__ = "0.1.0"
