"""nginx-upstream-audit: backend discovery and active health probing for nginx hosts."""

__version__ = "0.3.0"
