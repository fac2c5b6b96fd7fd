"""Exchange collaborator interfaces."""
