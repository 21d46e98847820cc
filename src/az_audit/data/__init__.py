"""Bundled EOL deprecation dataset."""
