"""
Provider credential lifecycle: near-expiry detection and refresh-token grants.
"""
