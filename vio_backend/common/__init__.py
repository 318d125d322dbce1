"""
Shared data model, configuration and error types.
"""
