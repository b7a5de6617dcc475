"""Packaged default mapping documents."""
