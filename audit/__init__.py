"""audit/ -- Append-only activity trail: event capture, async recording, queries.

Layer rule: audit/ imports only core/ + stdlib + third-party libraries.
It does NOT import from api/, auth/, or rbac/. The HTTP layer hands it plain
values (actor id, email, role name) rather than auth objects.
"""
