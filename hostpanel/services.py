"""
Wiring of every component for one API process.
"""

from .accounts import AccountService, DatabaseService, MySQLManager, SubdomainService, SystemUserManager
from .bind import DNSRecordService, DNSZoneManager
from .certs import SSLManager
from .db import Database
from .mail import EmailService, MailDomainRegistrar, MailQueue
from .phpfpm import PHPFPMManager, PHPSettingsService
from .runner import CommandRunner
from .tasks import Installer, TaskManager
from .terminal import ShellGateway
from .webserver import create_driver


class Panel:
    """Holds the shared components; stored on the Flask app as extensions['hostpanel']."""

    def __init__(self, config, db=None, runner=None):
        self.config = config
        self.db = db or Database(config.database_path)
        self.runner = runner or CommandRunner(simulate=config.simulate)

        self.driver = create_driver(config, self.runner)
        self.fpm = PHPFPMManager(config, self.runner)
        self.dns = DNSZoneManager(config, self.runner)
        self.registrar = MailDomainRegistrar(config, self.runner)
        self.system_users = SystemUserManager(config, self.runner)
        self.mysql = MySQLManager(config)

        self.accounts = AccountService(config, self.db, self.driver, self.fpm, self.dns,
                                       self.registrar, self.system_users, self.mysql)
        self.databases = DatabaseService(self.db, self.mysql)
        self.dns_records = DNSRecordService(self.db, self.dns)
        self.subdomains = SubdomainService(config, self.db, self.driver, self.dns_records, self.system_users)
        self.php_settings = PHPSettingsService(config, self.db, self.fpm)
        self.ssl = SSLManager(config, self.runner, self.db, self.driver)
        self.email = EmailService(self.db, self.registrar)
        self.mail_queue = MailQueue(self.db, self.runner, sendmail_path=config.sendmail_path)

        self.tasks = TaskManager()
        self.installer = Installer(self.tasks, self.runner, config)
        self.shells = ShellGateway(config)
