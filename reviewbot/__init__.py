"""Automated pull request review service."""

__version__ = "0.1.0"
