"""
Operational tools for the Lofi sync server.
"""
