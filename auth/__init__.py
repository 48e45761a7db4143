"""auth/ -- Credential and session lifecycle package for Gatehouse.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/. The cache/ layer is handed to the engine
as a constructed object, never imported at module level.
api/ imports from auth/, not the other way around.
"""
