"""auth/ -- Identity, token, session and audit-journal core for WebAuth.

Layer rule: auth/ imports only stdlib, third-party libraries and core/config.
It does NOT import from api/, web/, mail/, or sse/.
api/ and web/ import from auth/, not the other way around.
"""
