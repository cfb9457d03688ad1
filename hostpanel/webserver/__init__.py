from .driver import VhostConfig, VhostDriver, create_driver
from .apache import ApacheDriver
from .nginx import NginxDriver

__all__ = ['VhostConfig', 'VhostDriver', 'ApacheDriver', 'NginxDriver', 'create_driver']
