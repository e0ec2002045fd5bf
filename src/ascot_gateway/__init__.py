"""Gateway discovering Ascot devices and turning their capabilities into controls."""

__all__ = [
    "capabilities",
    "config",
    "controls",
    "devices",
    "discovery",
    "manifest",
    "orchestrator",
]
__version__ = "0.1.0"
