"""
Permission management feature module.

Role-based access control with a linear role authority ordering, a
hierarchical action model over a module tree, and per-user allow/deny
overrides.
"""
