"""
Synthetic scenarios for demos and end-to-end tests.
"""
