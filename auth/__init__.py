"""auth/ -- Credential lifecycle package for Passgate.

Access tokens (tokens.py), refresh-token rotation and users (store.py), OAuth
providers (oauth.py), and the login/refresh orchestration (session.py).

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
