"""Core collaborators used by the migration orchestrator."""
