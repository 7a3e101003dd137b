"""
Inbound bearer token verification.
"""
