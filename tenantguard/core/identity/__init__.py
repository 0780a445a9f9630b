"""
Actors and authentication material exchanged with the auth backend.
"""
