"""auth/ -- Authentication, authorization, and session lifecycle for Warden.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or cache/ at runtime; the permission cache is
injected into AuthorizationFacade by whoever assembles the application.
api/ imports from auth/, not the other way around.
"""
