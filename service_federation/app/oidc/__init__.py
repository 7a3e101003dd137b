"""
OpenID Connect provider metadata and userinfo access.
"""
