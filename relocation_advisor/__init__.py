"""Relocation advisor: intent extraction, multi-provider city data gathering and fusion."""

__version__ = "0.1.0"
