"""Multi-tenant web hosting control panel."""

__version__ = '0.1.0'
