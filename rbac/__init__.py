"""rbac/ -- Role, module and permission model plus the authorization decision.

Layer rule: rbac/ imports only core/ + stdlib + third-party libraries.
It does NOT import from api/, auth/, or audit/.
auth/ and api/ import from rbac/, not the other way around.
"""
