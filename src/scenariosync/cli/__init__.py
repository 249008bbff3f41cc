"""Command line interface for scenariosync."""
