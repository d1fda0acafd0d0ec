"""auth/ -- Accounts, identity-provider clients, and persistence for the OIDC login service.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, web/, or loginflow/.
loginflow/, api/ and web/ import from auth/, not the other way around.
"""
