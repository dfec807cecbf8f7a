"""pki/ -- Client certificate lifecycle: adapter port, Easy-RSA backend, manager.

Layer rule: pki/ imports from core/ and state/ only. It does NOT import from
api/, web/, or auth/. The manager depends on the PKIAdapter protocol, never
on subprocess details, so the certificate authority backend is swappable.
"""
