"""Route modules for the ObraCalc HTTP API."""
