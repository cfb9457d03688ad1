"""
Authoritative BIND zone files.
One db.<domain> file per domain, regenerated from the record set on every
change, plus a managed include file that declares the zones to named.
"""

import os
import re
import ipaddress
import logging
from datetime import datetime

from ..errors import ValidationError

logger = logging.getLogger(__name__)

RECORD_TYPES = ('NS', 'A', 'AAAA', 'CNAME', 'MX', 'TXT', 'SRV', 'CAA')
DEFAULT_TTL = 3600

_HOSTNAME_RE = re.compile(r'^(\*\.)?([a-zA-Z0-9_]([a-zA-Z0-9_-]{0,61}[a-zA-Z0-9])?\.)*[a-zA-Z0-9_]([a-zA-Z0-9_-]{0,61}[a-zA-Z0-9])?\.?$')
_CONTROL_RE = re.compile(r'[\x00-\x1f\x7f]')
_SERIAL_RE = re.compile(r'^\s*(\d+)\s*;\s*Serial', re.MULTILINE)


def is_hostname(value):
    return value in ('@', '*') or bool(_HOSTNAME_RE.fullmatch(value or ''))


def validate_record(record):
    """Check a record dict and return a normalised copy."""
    rtype = str(record.get('type', '')).upper()
    if rtype not in RECORD_TYPES:
        raise ValidationError(f"Unsupported record type: {record.get('type')}")

    for field in ('name', 'content'):
        if _CONTROL_RE.search(str(record.get(field) or '')):
            raise ValidationError(f"Record {field} must not contain control characters")

    name =(record.get('name') or '@').strip()
    if not is_hostname(name):
        raise ValidationError(f"Invalid record name: {name}")

    content = str(record.get('content', '')).strip()
    if not content:
        raise ValidationError("Record content is required")

    if rtype == 'A':
        try:
            ipaddress.IPv4Address(content)
        except ValueError:
            raise ValidationError("A record must contain a valid IPv4 address")
    elif rtype == 'AAAA':
        try:
            ipaddress.IPv6Address(content)
        except ValueError:
            raise ValidationError("AAAA record must contain a valid IPv6 address")
    elif rtype in ('CNAME', 'NS', 'MX'):
        if not is_hostname(content):
            raise ValidationError(f"{rtype} record must point to a valid hostname")
    elif rtype == 'TXT':
        if len(content) > 255:
            raise ValidationError("TXT record must be 255 characters or less")
    elif rtype in ('SRV', 'CAA'):
        if len(content.split()) < 3:
            raise ValidationError(f"{rtype} record needs at least three fields")

    try:
        ttl = int(record.get('ttl') or DEFAULT_TTL)
        priority = int(record.get('priority') or 0)
    except (TypeError, ValueError):
        raise ValidationError("ttl and priority must be integers")
    if ttl <= 0:
        raise ValidationError("ttl must be positive")
    if rtype == 'MX' and not record.get('priority'):
        priority = 10

    return {'name': name, 'type': rtype, 'content': content, 'ttl': ttl, 'priority': priority}


def default_records(domain, server_ip, nameservers):
    """The record set every new zone starts with."""
    records = [
        {'name': '@', 'type': 'A', 'content': server_ip},
        {'name': 'www', 'type': 'A', 'content': server_ip},
        {'name': 'mail', 'type': 'A', 'content': server_ip},
        {'name': 'ftp', 'type': 'A', 'content': server_ip},
        {'name': 'webmail', 'type': 'CNAME', 'content': f"mail.{domain}."},
        {'name': '@', 'type': 'MX', 'content': f"mail.{domain}.", 'priority': 10},
        {'name': '@', 'type': 'TXT', 'content': f"v=spf1 a mx ip4:{server_ip} ~all"},
    ]
    for ns in nameservers[:2]:
        records.append({'name': '@', 'type': 'NS', 'content': f"{ns.rstrip('.')}."})
    for r in records:
        r.setdefault('ttl', DEFAULT_TTL)
        r.setdefault('priority', 0)
    return records


def _name_key(record):
    name = record.get('name') or '@'
    return (0 if name == '@' else 1, name, record.get('content', ''))


def quote_txt(content):
    """One quoted character-string; surrounding quotes are dropped, inner ones escaped."""
    if len(content) >= 2 and content[0] == content[-1] == '"':
        content = content[1:-1]
    return '"' + content.replace('\\', '\\\\').replace('"', '\\"') + '"'


def format_record(record):
    name = record.get('name') or '@'
    rtype = record['type']
    ttl = record.get('ttl') or DEFAULT_TTL
    content = record['content']
    if rtype in ('MX', 'SRV'):
        return f"{name:<8}{ttl}\tIN\t{rtype}\t{record.get('priority') or 0}\t{content}"
    if rtype == 'TXT':
        content = quote_txt(content)
    return f"{name:<8}{ttl}\tIN\t{rtype}\t{content}"


def render_zone(domain, records, serial, nameservers):
    """Render a zone. Groups follow RECORD_TYPES order, apex first then lexical."""
    primary_ns = f"{nameservers[0].rstrip('.')}." if nameservers else f"ns1.{domain}."
    lines = [
        f"; Zone file for {domain}",
        "; Managed by hostpanel",
        f"$TTL {DEFAULT_TTL}",
        f"@       IN      SOA     {primary_ns} hostmaster.{domain}. (",
        f"                        {serial}      ; Serial",
        "                        3600            ; Refresh",
        "                        1800            ; Retry",
        "                        604800          ; Expire",
        "                        86400 )         ; Minimum TTL",
        "",
    ]
    for rtype in RECORD_TYPES:
        group = sorted((r for r in records if r['type'] == rtype), key=_name_key)
        if not group:
            continue
        lines.append(f"; {rtype} Records")
        lines.extend(format_record(r) for r in group)
        lines.append("")
    return '\n'.join(lines)


class DNSZoneManager:
    """Writes zone files and keeps named's zone declarations in sync."""

    def __init__(self, config, runner, clock=datetime.now):
        self.config = config
        self.runner = runner
        self.clock = clock

    @property
    def zones_dir(self):
        return self.config.system_path('/etc/bind/zones')

    @property
    def include_file(self):
        return self.config.system_path('/etc/bind/named.conf.hostpanel')

    def zone_path(self, domain):
        return os.path.join(self.zones_dir, f"db.{domain}")

    def zone_exists(self, domain):
        return os.path.exists(self.zone_path(domain))

    def current_serial(self, domain):
        try:
            with open(self.zone_path(domain)) as f:
                match = _SERIAL_RE.search(f.read())
        except FileNotFoundError:
            return None
        return int(match.group(1)) if match else None

    def next_serial(self, domain):
        """YYYYMMDDHH of now, bumped past the previous serial when written within the same hour."""
        serial = int(self.clock().strftime('%Y%m%d%H'))
        previous = self.current_serial(domain)
        if previous is not None and previous >= serial:
            serial = previous + 1
        return serial

    def write_zone(self, domain, records):
        """Regenerate the zone from a full record set and reload named."""
        os.makedirs(self.zones_dir, exist_ok=True)
        serial = self.next_serial(domain)
        content = render_zone(domain, records, serial, self.config.nameservers)
        path = self.zone_path(domain)
        with open(path, 'w') as f:
            f.write(content)
        os.chmod(path, 0o644)
        self._declare_zone(domain)
        logger.info(f"DNS zone written: {path} (serial {serial})")
        self.reload()
        return path

    def create_zone(self, domain, records=None):
        if records is None:
            records = default_records(domain, self.config.server_ip, self.config.nameservers)
        return self.write_zone(domain, records)

    def delete_zone(self, domain, reload=True):
        path = self.zone_path(domain)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"DNS zone deleted: {path}")
        self._undeclare_zone(domain)
        if reload:
            self.reload()

    def _stanza(self, domain):
        return f'zone "{domain}" {{ type master; file "{self.zone_path(domain)}"; }};'

    def _read_declarations(self):
        try:
            with open(self.include_file) as f:
                return [line.rstrip('\n') for line in f if line.strip()]
        except FileNotFoundError:
            return []

    def _declare_zone(self, domain):
        lines = self._read_declarations()
        marker = f'zone "{domain}" '
        if any(line.startswith(marker) for line in lines):
            return
        lines.append(self._stanza(domain))
        self._write_declarations(lines)

    def _undeclare_zone(self, domain):
        lines = self._read_declarations()
        marker = f'zone "{domain}" '
        kept = [line for line in lines if not line.startswith(marker)]
        if len(kept) != len(lines):
            self._write_declarations(kept)

    def _write_declarations(self, lines):
        os.makedirs(os.path.dirname(self.include_file), exist_ok=True)
        with open(self.include_file, 'w') as f:
            f.write('\n'.join(lines) + ('\n' if lines else ''))

    def reload(self):
        """Ask named to reload. A failure leaves the written files in place."""
        result = self.runner.run(['rndc', 'reload'])
        if result.ok:
            return True
        result = self.runner.run(['systemctl', 'reload', 'bind9'])
        if not result.ok:
            logger.warning(f"DNS reload failed: {result.output.strip()}")
        return result.ok
