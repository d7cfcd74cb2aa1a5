"""Local proxy that redirects game server lists and connections through itself."""

__version__ = "1.0.0"
