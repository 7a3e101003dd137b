"""
Identity Federation service application package.
"""
