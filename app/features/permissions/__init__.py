"""
Permission management feature module.

Role-based access control: a catalog of ``<module>.<action>`` permissions,
levelled roles granting them, per-user resolution with caching, and the
route guards built on top.
"""
