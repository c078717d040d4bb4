"""auth/ -- OIDC sign-in, user provisioning and sessions for LinkDash.

Layer rule: auth/ imports stdlib, third-party libraries and core/ only.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
