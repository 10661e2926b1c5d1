"""sessions/ -- Server-side session record persistence for PenTrack.

Layer rule: sessions/ imports only stdlib, third-party libraries and core/.
It stores opaque JSON values; it knows nothing about principals or users.
"""
