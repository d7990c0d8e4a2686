"""rhiza-tui: watch and sync a fleet of git clones against their rhiza templates."""

__version__ = "0.1.0"
