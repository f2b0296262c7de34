"""auth/ -- Authentication core for AuthGate.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and state/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
