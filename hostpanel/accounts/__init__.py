from .databases import DatabaseService
from .mysql_manager import MySQLManager, prefixed_name
from .orchestrator import AccountService, validate_domain, validate_username
from .subdomains import SubdomainService
from .system_users import SystemUserManager

__all__ = [
    'AccountService', 'DatabaseService', 'MySQLManager', 'SubdomainService', 'SystemUserManager',
    'prefixed_name', 'validate_domain', 'validate_username',
]
