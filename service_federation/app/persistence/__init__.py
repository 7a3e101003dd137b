"""
Relational store access for credentials, organisation settings and recipient history.
"""
