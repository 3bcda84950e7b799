"""auth/ -- Authentication package for Warden: users, sessions, the HTTP gate.

Layer rule: auth/ imports only core/ + rbac/ + stdlib + third-party libraries.
It does NOT import from api/ or audit/.
api/ imports from auth/, not the other way around.
"""
