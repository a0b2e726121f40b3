"""
Permission management feature module.

Implements domain-scoped Role-Based Access Control: policies granted to users
or roles within the system, a group or a project, role assignments per domain,
and role inheritance.
"""
