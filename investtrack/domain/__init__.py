"""Domain layer: errors and collaborator interfaces."""
