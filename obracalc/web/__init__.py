"""FastAPI application for ObraCalc."""
