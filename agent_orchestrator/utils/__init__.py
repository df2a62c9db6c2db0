"""
Shared utilities: logging, configuration, error handling and metrics.
"""
