"""Hybrid matching: candidate search, LLM judge, pricing and budget aggregation."""
