"""Infrastructure adapters: HTTP transport and logging."""
