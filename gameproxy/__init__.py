"""TCP reverse proxy for game servers with SQLite-backed state."""

__version__ = "0.1.0"