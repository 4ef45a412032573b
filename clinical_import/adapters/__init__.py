"""Adapters: format detection, parsers and storage collaborators."""
