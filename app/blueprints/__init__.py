"""
Plan Item Hierarchy Engine
Blueprint registry.

    plan_item_bp  — plan tree, item CRUD/move, history, bulk update, CSV import, item types
    health_bp     — readiness / liveness probes
"""
