"""state/ -- Keyed-store repositories for lockout and certificate registry state.

Layer rule: state/ imports only stdlib + third-party libraries.
auth/ and pki/ import from state/, not the other way around.
"""
