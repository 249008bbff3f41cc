"""Git-backed scenario synchronisation."""
