"""
Permission management feature module.

Implements hierarchical Role-Based Access Control: scoped permission strings
held at nodes of the organization tree, decided by a pure engine, with
quota-guarded role assignments.
"""
