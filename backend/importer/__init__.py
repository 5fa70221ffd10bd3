"""Multi-tenant data import engine: download, read, filter, map, prepare and save."""
__version__ = "0.1.0"
