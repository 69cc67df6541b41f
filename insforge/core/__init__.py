"""Core SDK building blocks: settings and exceptions."""
