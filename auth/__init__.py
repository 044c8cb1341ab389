"""auth/ -- Users, sessions and the authentication gate for Mingle.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, social/, or media/.
api/ imports from auth/, not the other way around.
"""
