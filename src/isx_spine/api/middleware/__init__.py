"""API middleware: request ids and error mapping."""
