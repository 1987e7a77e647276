"""Capstan: a capability broker for AI agents and their tools."""

try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("capstan")
except Exception:
    __version__ = "2026.10.18"  # fallback

__all__ = ["__version__"]
