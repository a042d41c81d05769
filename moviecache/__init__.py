"""Response caching, request coalescing and a cached TMDB catalog service."""

__version__ = "0.3.0"
