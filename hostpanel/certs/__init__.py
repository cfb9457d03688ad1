from .ssl_manager import SSLManager, classify, owned_name, san_matches

__all__ = ['SSLManager', 'classify', 'owned_name', 'san_matches']
