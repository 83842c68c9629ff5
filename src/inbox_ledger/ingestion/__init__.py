"""Parsing of raw provider payloads."""

from .parser import EmailParser, ParsedMessage

__all__ = ["EmailParser", "ParsedMessage"]
