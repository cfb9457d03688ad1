import sqlite3
import logging

from ..errors import ConflictError, NotFoundError, AuthorizationError
from .zone_manager import validate_record

logger = logging.getLogger(__name__)


class DNSRecordService:
    """Record rows in dns_records; the zone file is regenerated from them after every change."""

    def __init__(self, db, dns):
        self.db = db
        self.dns = dns

    def list_records(self, domain_id, conn=None):
        return self.db.fetch_all(
            "SELECT * FROM dns_records WHERE domain_id=? AND active=1 ORDER BY type, name, id",
            (domain_id,), conn=conn)

    def regenerate(self, domain, conn=None):
        records = self.list_records(domain['id'], conn=conn)
        return self.dns.write_zone(domain['name'], records)

    def add_record(self, domain, record):
        record = validate_record(record)
        try:
            with self.db.transaction() as conn:
                record_id = self.db.insert('dns_records', {'domain_id': domain['id'], **record}, conn=conn)
                self.regenerate(domain, conn=conn)
        except sqlite3.IntegrityError:
            raise ConflictError("An identical record already exists")
        logger.info(f"DNS record added to {domain['name']}: {record['name']} {record['type']} {record['content']}")
        return {'id': record_id, 'domain_id': domain['id'], **record}

    def get_record(self, user, record_id):
        """Record plus its domain, with the same disclosure rules as domains."""
        row = self.db.fetch_one("""
            SELECT r.*, d.name AS domain_name, d.user_id AS owner_id
            FROM dns_records r JOIN domains d ON d.id = r.domain_id
            WHERE r.id=?
        """, (record_id,))
        if user['role'] != 'admin':
            if not row or row['owner_id'] != user['user_id']:
                raise AuthorizationError()
        elif not row:
            raise NotFoundError("DNS record not found")
        return row

    def delete_record(self, user, record_id):
        row = self.get_record(user, record_id)
        domain = {'id': row['domain_id'], 'name': row['domain_name']}
        with self.db.transaction() as conn:
            self.db.delete('dns_records', 'id=?', (record_id,), conn=conn)
            self.regenerate(domain, conn=conn)
        logger.info(f"DNS record {record_id} removed from {domain['name']}")

    def add_host(self, domain, name, address, conn=None):
        """A record for a new host name; an existing identical row is left alone."""
        exists = self.db.fetch_value(
            "SELECT COUNT(*) FROM dns_records WHERE domain_id=? AND name=? AND type='A' AND content=?",
            (domain['id'], name, address), conn=conn)
        if not exists:
            self.db.insert('dns_records', {
                'domain_id': domain['id'], 'name': name, 'type': 'A', 'content': address, 'ttl': 3600,
            }, conn=conn)
        return self.regenerate(domain, conn=conn)

    def remove_host(self, domain, name, conn=None):
        self.db.delete('dns_records', "domain_id=? AND name=? AND type IN ('A', 'AAAA', 'CNAME')",
                       (domain['id'], name), conn=conn)
        return self.regenerate(domain, conn=conn)
