"""auth/ -- Administrator authentication for VPNAdmin: passwords, lockout, JWT pairs, sessions.

Layer rule: auth/ imports from core/ and state/ plus third-party libraries.
It does NOT import from api/, web/, or pki/.
api/ and web/ import from auth/, not the other way around.
"""
