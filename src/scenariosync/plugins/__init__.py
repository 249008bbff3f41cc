"""Git integration plugins for scenariosync."""
