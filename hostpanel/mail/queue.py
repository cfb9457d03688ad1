"""
Rate-limited outbound mail.

The API sends directly while the owner is under the package's hourly and
daily caps and queues otherwise. The worker process drains the queue.
"""

import json
import logging
from datetime import datetime, timedelta

from ..errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HOURLY_LIMIT = 100
DEFAULT_DAILY_LIMIT = 500
RETRY_STEP = timedelta(minutes=5)
TIME_FORMAT = '%Y-%m-%d %H:%M:%S'


def _fmt(moment):
    return moment.strftime(TIME_FORMAT)


def next_hour(now):
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def next_day(now):
    return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)


def build_message(sender, recipient, subject, body, headers=None):
    """RFC 822 text handed to sendmail -t."""
    text = f"From: {sender}\nTo: {recipient}\nSubject: {subject or ''}\n"
    if headers:
        if isinstance(headers, dict):
            headers = '\n'.join(f"{k}: {v}" for k, v in headers.items())
        text += headers.rstrip('\n') + '\n'
    return text + '\n' + (body or '')


class MailQueue:
    """Quota checks, direct sends and queue processing over the metadata store."""

    def __init__(self, db, runner, sendmail_path='/usr/sbin/sendmail', clock=datetime.now):
        self.db = db
        self.runner = runner
        self.sendmail_path = sendmail_path
        self.clock = clock

    # ---- quota ----

    def limits_for(self, user_id):
        row = self.db.fetch_one("""
            SELECT COALESCE(p.max_emails_per_hour, ?) AS hourly,
                   COALESCE(p.max_emails_per_day, ?) AS daily
            FROM users u
            LEFT JOIN user_packages up ON up.user_id = u.id
            LEFT JOIN packages p ON p.id = up.package_id
            WHERE u.id = ?
        """, (DEFAULT_HOURLY_LIMIT, DEFAULT_DAILY_LIMIT, user_id))
        if not row:
            return DEFAULT_HOURLY_LIMIT, DEFAULT_DAILY_LIMIT
        return row['hourly'], row['daily']

    def usage(self, user_id, now=None):
        """Sends recorded in the last hour and since local midnight."""
        now = now or self.clock()
        hour_ago = _fmt(now - timedelta(hours=1))
        today = _fmt(now.replace(hour=0, minute=0, second=0, microsecond=0))
        last_hour = self.db.fetch_value(
            "SELECT COUNT(*) FROM email_send_log WHERE user_id=? AND sent_at >= ?", (user_id, hour_ago))
        today_count = self.db.fetch_value(
            "SELECT COUNT(*) FROM email_send_log WHERE user_id=? AND sent_at >= ?", (user_id, today))
        return last_hour, today_count

    def check_rate_limit(self, user_id, now=None):
        """Return (allowed, breached_window, reschedule_at)."""
        now = now or self.clock()
        hourly, daily = self.limits_for(user_id)
        last_hour, today = self.usage(user_id, now)
        if last_hour >= hourly:
            return False, 'hourly', next_hour(now)
        if today >= daily:
            return False, 'daily', next_day(now)
        return True, None, None

    # ---- sending ----

    def deliver(self, sender, recipient, subject, body, headers=None):
        """Hand one message to the local MTA."""
        message = build_message(sender, recipient, subject, body, headers)
        return self.runner.run([self.sendmail_path, '-t', '-oi', '-f', sender], stdin=message, timeout=60)

    def log_send(self, user_id, sender, recipient, subject, size_bytes=0, conn=None):
        self.db.insert('email_send_log', {
            'user_id': user_id,
            'sender': sender,
            'recipient': recipient,
            'subject': subject,
            'size_bytes': size_bytes,
            'sent_at': _fmt(self.clock()),
            'status': 'sent',
        }, conn=conn)

    def enqueue(self, user_id, sender, recipient, subject, body, headers=None,
                scheduled_at=None, priority=5, max_retries=3):
        if isinstance(headers, dict):
            headers = '\n'.join(f"{k}: {v}" for k, v in headers.items())
        now = self.clock()
        return self.db.insert('mail_queue', {
            'user_id': user_id,
            'sender': sender,
            'recipient': recipient,
            'subject': subject,
            'body': body,
            'headers': headers,
            'priority': priority,
            'max_retries': max_retries,
            'scheduled_at': _fmt(scheduled_at) if scheduled_at else None,
            'status': 'pending',
            'created_at': _fmt(now),
            'updated_at': _fmt(now),
        })

    def send(self, user_id, sender, recipient, subject, body, headers=None):
        """
        Send now when under quota, otherwise queue for the next window.

        Returns a dict describing what happened: {'status': 'sent'} or
        {'status': 'queued', 'queue_id': ..., 'scheduled_at': ..., 'limit': ...}.
        """
        if not sender or not recipient:
            raise ValidationError('sender and recipient are required')

        allowed, window, reschedule_at = self.check_rate_limit(user_id)
        if not allowed:
            queue_id = self.enqueue(user_id, sender, recipient, subject, body, headers,
                                    scheduled_at=reschedule_at)
            logger.info(f"Rate limit ({window}) reached for user {user_id}, queued mail {queue_id} until {reschedule_at}")
            return {'status': 'queued', 'queue_id': queue_id,
                    'scheduled_at': _fmt(reschedule_at), 'limit': window}

        result = self.deliver(sender, recipient, subject, body, headers)
        if not result.ok:
            queue_id = self.enqueue(user_id, sender, recipient, subject, body, headers,
                                    scheduled_at=self.clock() + RETRY_STEP)
            logger.warning(f"Direct send failed, queued mail {queue_id} for retry: {result.output.strip()}")
            return {'status': 'queued', 'queue_id': queue_id, 'error': result.output.strip()}

        self.log_send(user_id, sender, recipient, subject, size_bytes=len(body or ''))
        return {'status': 'sent'}

    # ---- worker side ----

    def due_items(self, limit=50):
        return self.db.fetch_all("""
            SELECT * FROM mail_queue
            WHERE status='pending' AND (scheduled_at IS NULL OR scheduled_at <= ?)
            ORDER BY priority ASC, created_at ASC
            LIMIT ?
        """, (_fmt(self.clock()), limit))

    def process_item(self, item):
        """Deliver one queued item. Returns 'sent', 'rescheduled', 'retry' or 'failed'."""
        now = self.clock()
        allowed, window, reschedule_at = self.check_rate_limit(item['user_id'], now)
        if not allowed:
            self.db.update('mail_queue',
                           {'scheduled_at': _fmt(reschedule_at), 'updated_at': _fmt(now)},
                           'id=?', (item['id'],))
            logger.info(f"Mail {item['id']} rescheduled to {reschedule_at} ({window} limit)")
            return 'rescheduled'

        self.db.update('mail_queue', {'status': 'processing', 'updated_at': _fmt(now)}, 'id=?', (item['id'],))
        try:
            result = self.deliver(item['sender'], item['recipient'], item['subject'], item['body'], item['headers'])
            error = None if result.ok else (result.output.strip() or f"sendmail exited with {result.returncode}")
        except Exception as e:
            # The item is marked processing; it must leave that state whatever happened.
            logger.exception(f"Delivery of mail {item['id']} raised")
            error = f"{e.__class__.__name__}: {e}"

        if error is not None:
            retry_count = item['retry_count'] + 1
            if retry_count >= item['max_retries']:
                self.db.update('mail_queue', {
                    'status': 'failed',
                    'retry_count': retry_count,
                    'error_message': error,
                    'updated_at': _fmt(now),
                }, 'id=?', (item['id'],))
                logger.error(f"Mail {item['id']} failed permanently: {error}")
                return 'failed'

            retry_at = now + RETRY_STEP * retry_count
            self.db.update('mail_queue', {
                'status': 'pending',
                'retry_count': retry_count,
                'error_message': error,
                'scheduled_at': _fmt(retry_at),
                'updated_at': _fmt(now),
            }, 'id=?', (item['id'],))
            logger.warning(f"Mail {item['id']} retry {retry_count} scheduled at {retry_at}: {error}")
            return 'retry'

        with self.db.transaction() as conn:
            self.log_send(item['user_id'], item['sender'], item['recipient'], item['subject'],
                          size_bytes=len(item['body'] or ''), conn=conn)
            self.db.delete('mail_queue', 'id=?', (item['id'],), conn=conn)
        logger.info(f"Mail {item['id']} sent and removed from queue")
        return 'sent'

    def process_queue(self, limit=50, should_stop=None):
        """Process one batch of due items. Stops between items when should_stop() is true."""
        items = self.due_items(limit)
        if not items:
            logger.debug("No pending mail in queue")
            return {}
        logger.info(f"Processing {len(items)} queued mail(s)")
        outcomes = {}
        for item in items:
            if should_stop and should_stop():
                logger.info("Stop requested, leaving remaining items for the next run")
                break
            outcome = self.process_item(item)
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        return outcomes

    # ---- administration ----

    def list_items(self, status=None, user_id=None, limit=100):
        sql = "SELECT * FROM mail_queue WHERE 1=1"
        params = []
        if status:
            sql += " AND status=?"
            params.append(status)
        if user_id:
            sql += " AND user_id=?"
            params.append(user_id)
        sql += " ORDER BY priority ASC, created_at ASC LIMIT ?"
        params.append(limit)
        return self.db.fetch_all(sql, params)

    def stats(self):
        rows = self.db.fetch_all("SELECT status, COUNT(*) AS count FROM mail_queue GROUP BY status")
        counts = {'pending': 0, 'processing': 0, 'failed': 0}
        for row in rows:
            counts[row['status']] = row['count']
        now = self.clock()
        counts['sent_last_hour'] = self.db.fetch_value(
            "SELECT COUNT(*) FROM email_send_log WHERE sent_at >= ?", (_fmt(now - timedelta(hours=1)),))
        counts['sent_today'] = self.db.fetch_value(
            "SELECT COUNT(*) FROM email_send_log WHERE sent_at >= ?",
            (_fmt(now.replace(hour=0, minute=0, second=0, microsecond=0)),))
        return counts

    def retry(self, item_id):
        """Put a failed or stuck item back in line for the next worker tick."""
        now = _fmt(self.clock())
        return self.db.update('mail_queue', {
            'status': 'pending',
            'error_message': None,
            'scheduled_at': now,
            'updated_at': now,
        }, 'id=?', (item_id,))

    def remove(self, item_id):
        return self.db.delete('mail_queue', 'id=?', (item_id,))

    @staticmethod
    def serialize(item):
        item = dict(item)
        if item.get('headers'):
            item['headers'] = item['headers'].split('\n')
        return json.loads(json.dumps(item, default=str))
