"""Tasks and the kanban board."""
