"""auth/ -- Authentication, session and authorization package for PenTrack.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and
sessions/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
