"""social/ -- Follow graph and feed for Mingle.

Layer rule: social/ imports from auth/ (user table and mappers) and core/.
It does NOT import from api/ or media/.
"""
