"""Claude Hub - drive long-running CLI sessions from the browser."""

__version__ = "0.1.0"
