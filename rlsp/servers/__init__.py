"""Process, transport and session management for R language servers."""
