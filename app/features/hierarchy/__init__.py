"""
Organization hierarchy feature module.

Union → Conference → Church → Team → Service, stored with materialized paths.
Structural changes (move, deactivate) cascade to the subtree through the
cascade coordinator.
"""
