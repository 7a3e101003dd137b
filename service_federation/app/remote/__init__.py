"""
Authenticated client for the identity provider's resource API.
"""
