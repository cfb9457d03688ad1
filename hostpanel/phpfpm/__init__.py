from .pool_manager import PHPFPMManager, clamp_settings, normalize_settings, parse_size
from .settings import PHPSettingsService

__all__ = ['PHPFPMManager', 'PHPSettingsService', 'clamp_settings', 'normalize_settings', 'parse_size']
