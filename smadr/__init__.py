"""Strategic Multi-Agent Deep Research backend."""
