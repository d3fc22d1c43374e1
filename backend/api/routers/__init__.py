"""API Routers package."""
from . import auth, records, catalogs, misc

__all__ = ['auth', 'records', 'catalogs', 'misc']
