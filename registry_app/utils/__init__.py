"""
Application utilities: identity, logging, error handling and monitoring.
"""
