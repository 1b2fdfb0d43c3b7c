"""Quonitor: quota and usage monitoring for LLM provider accounts."""

__version__ = "0.1.0"
