"""HashGuard: evidence integrity verification and chain-of-custody engine."""

__version__ = "0.1.0"
