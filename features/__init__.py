"""
Features package — storage and lookup collaborators of the task engine.

Convention:
  features/<feature_name>/
    __init__.py      — public API re-exports
    db.py            — database layer (if applicable)
    ...              — any other feature-specific modules

  results/     — result sinks (Postgres, JSON files) for finished tasks
  workspaces/  — workspace → ticker lookup
"""
