"""
Verification key set package.

Retrieves and caches the provider's JSON Web Key Set (JWKS) used to verify
inbound bearer tokens.

Key points:
- The key set URI comes from the provider discovery document.
- One cache per process, replaced atomically on refresh.
- A failed refresh keeps serving the previous key set.
- Unknown key ids trigger one forced refresh to pick up rotated keys.
"""
