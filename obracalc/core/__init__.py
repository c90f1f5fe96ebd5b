"""Cross-cutting concerns: errors, logging and the job queue."""
