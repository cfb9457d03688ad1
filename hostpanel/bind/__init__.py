from .records import DNSRecordService
from .zone_manager import DNSZoneManager, default_records, render_zone, validate_record

__all__ = ['DNSRecordService', 'DNSZoneManager', 'default_records', 'render_zone', 'validate_record']
