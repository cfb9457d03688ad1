from .accounts import EmailService
from .queue import MailQueue
from .registrar import LookupTable, MailDomainRegistrar, split_email

__all__ = ['EmailService', 'LookupTable', 'MailDomainRegistrar', 'MailQueue', 'split_email']
