import os
import unittest
from datetime import datetime, timedelta

from ..errors import AuthorizationError, ConflictError, ValidationError
from ..mail import MailQueue, split_email
from ..mail.queue import build_message, next_day, next_hour
from ..mail.worker import MailWorker
from .helpers import ADMIN, PanelTestCase, ScriptedRunner


class TestSplitEmail(unittest.TestCase):
    """Address parsing."""

    def test_split(self):
        """Addresses are lowercased and split once."""
        self.assertEqual(split_email(' Info@Example.COM '), ('info', 'example.com'))

    def test_invalid(self):
        """Malformed addresses are rejected."""
        for email in ('', 'no-at-sign', 'a@b@c', '@example.com', 'info@', '.x@example.com'):
            with self.assertRaises(ValidationError, msg=email):
                split_email(email)


class TestMailDomainRegistrar(PanelTestCase):
    """Postfix, Dovecot and OpenDKIM tables."""

    def setUp(self):
        super().setUp()
        self.registrar = self.panel.registrar

    def read(self, path):
        with open(self.path(path)) as f:
            return f.read().splitlines()

    def test_add_domain_is_idempotent(self):
        """Registering twice leaves one line per table."""
        self.registrar.add_domain('example.com')
        self.registrar.add_domain('example.com')
        self.assertEqual(self.read('/etc/postfix/vdomains'), ['example.com OK'])
        self.assertEqual(self.read('/etc/opendkim/SigningTable'),
                         ['*@example.com default._domainkey.example.com'])
        self.assertEqual(self.read('/etc/opendkim/TrustedHosts'), ['example.com'])
        key_lines = self.read('/etc/opendkim/KeyTable')
        self.assertEqual(len(key_lines), 1)
        self.assertTrue(key_lines[0].startswith('default._domainkey.example.com example.com:default:'))
        self.assertTrue(key_lines[0].endswith('/etc/opendkim/keys/example.com/default.private'))
        self.assertTrue(os.path.isdir(self.registrar.domain_spool('example.com')))

    def test_stale_key_line_is_replaced(self):
        """A KeyTable line pointing elsewhere is rewritten."""
        self.registrar.key_table.add('default._domainkey.example.com example.com:default:/old/path')
        self.registrar.add_domain('example.com')
        key_lines = self.read('/etc/opendkim/KeyTable')
        self.assertEqual(len(key_lines), 1)
        self.assertNotIn('/old/path', key_lines[0])

    def test_remove_domain(self):
        """Removal drops the domain and everything under it."""
        self.registrar.add_domain('example.com')
        self.registrar.add_domain('example.org')
        self.registrar.add_mailbox('info@example.com', 'password123')
        self.registrar.add_forwarder('sales@example.com', 'boss@elsewhere.test')

        self.registrar.remove_domain('example.com')
        self.assertFalse(self.registrar.is_registered('example.com'))
        self.assertTrue(self.registrar.is_registered('example.org'))
        self.assertEqual(self.read('/etc/postfix/vmailbox'), [])
        self.assertEqual(self.read('/etc/postfix/virtual'), [])
        self.assertEqual(self.read('/etc/dovecot/users'), [])
        self.assertEqual(self.read('/etc/opendkim/TrustedHosts'), ['example.org'])
        self.assertFalse(os.path.exists(self.registrar.domain_spool('example.com')))

    def test_remove_unknown_domain(self):
        """Removing a domain that was never added is harmless."""
        self.registrar.remove_domain('ghost.example')

    def test_mailbox_requires_registered_domain(self):
        """Mailboxes only exist under mail domains."""
        with self.assertRaises(ValidationError):
            self.registrar.add_mailbox('info@unknown.example', 'password123')

    def test_mailbox_lifecycle(self):
        """Mailboxes get a maildir, a vmailbox entry and one passwd line."""
        self.registrar.add_domain('example.com')
        self.registrar.add_mailbox('info@example.com', 'password123')
        self.registrar.set_mailbox_password('info@example.com', 'newpassword1')

        self.assertEqual(self.read('/etc/postfix/vmailbox'), ['info@example.com example.com/info/'])
        users = self.read('/etc/dovecot/users')
        self.assertEqual(len(users), 1)
        self.assertTrue(users[0].startswith('info@example.com:{BLF-CRYPT}'))
        self.assertTrue(os.path.isdir(os.path.join(self.registrar.maildir('info@example.com'), 'new')))

        self.registrar.remove_mailbox('info@example.com')
        self.assertEqual(self.read('/etc/postfix/vmailbox'), [])
        self.assertFalse(os.path.exists(self.registrar.maildir('info@example.com')))

    def test_autoresponder_script(self):
        """Vacation replies become a sieve script with escaped quotes."""
        self.registrar.add_domain('example.com')
        self.registrar.add_mailbox('info@example.com', 'password123')
        path = self.registrar.set_autoresponder('info@example.com', 'Away "now"', 'Back Monday')
        with open(path) as f:
            script = f.read()
        self.assertIn('require ["vacation"];', script)
        self.assertIn(':subject "Away \\"now\\""', script)
        self.registrar.remove_autoresponder('info@example.com')
        self.assertFalse(os.path.exists(path))


class TestEmailService(PanelTestCase):
    """Mailbox, forwarder and autoresponder metadata."""

    def setUp(self):
        super().setUp()
        self.account = self.create_account('alice', 'alice.example')
        self.user = self.user_of(self.account)
        self.email = self.panel.email

    def test_create_account(self):
        """A mailbox is stored with a hashed password."""
        created = self.email.create_account(self.user, 'Info@alice.example', 'password123')
        self.assertEqual(created['email'], 'info@alice.example')
        row = self.db.fetch_one("SELECT * FROM email_accounts WHERE id=?", (created['id'],))
        self.assertNotIn('password123', row['password_hash'])
        self.assertTrue(self.panel.registrar.vmailbox.has_key('info@alice.example'))
        self.assertEqual([a['email'] for a in self.email.list_accounts(self.user)], ['info@alice.example'])

    def test_duplicate_account(self):
        """The same address twice is a conflict."""
        self.email.create_account(self.user, 'info@alice.example', 'password123')
        with self.assertRaises(ConflictError):
            self.email.create_account(self.user, 'info@alice.example', 'password123')

    def test_short_password(self):
        """Mailbox passwords need eight characters."""
        with self.assertRaises(ValidationError):
            self.email.create_account(self.user, 'info@alice.example', 'short')

    def test_foreign_domain(self):
        """Tenants cannot create mail under another tenant's domain."""
        bob = self.user_of(self.create_account('bob', 'bob.example'))
        with self.assertRaises(AuthorizationError):
            self.email.create_account(bob, 'info@alice.example', 'password123')
        with self.assertRaises(AuthorizationError):
            self.email.create_account(bob, 'info@nowhere.example', 'password123')

    def test_quota(self):
        """Starter allows five mailboxes; admins are not limited."""
        for i in range(5):
            self.email.create_account(self.user, f"box{i}@alice.example", 'password123')
        with self.assertRaises(ValidationError):
            self.email.create_account(self.user, 'box5@alice.example', 'password123')
        self.email.create_account(ADMIN, 'box5@alice.example', 'password123')

    def test_delete_account(self):
        """Deleting a mailbox removes its row, files and autoresponder."""
        created = self.email.create_account(self.user, 'info@alice.example', 'password123')
        self.email.set_autoresponder(self.user, 'info@alice.example', 'Away', 'Back soon')
        self.email.delete_account(self.user, created['id'])
        self.assertEqual(self.email.list_accounts(self.user), [])
        self.assertEqual(self.email.list_autoresponders(self.user), [])
        self.assertFalse(self.panel.registrar.vmailbox.has_key('info@alice.example'))

    def test_change_password(self):
        """A new password replaces the stored hash."""
        created = self.email.create_account(self.user, 'info@alice.example', 'password123')
        before = self.db.fetch_value("SELECT password_hash FROM email_accounts WHERE id=?", (created['id'],))
        self.email.change_password(self.user, created['id'], 'another-pass')
        after = self.db.fetch_value("SELECT password_hash FROM email_accounts WHERE id=?", (created['id'],))
        self.assertNotEqual(before, after)

    def test_forwarders(self):
        """Forwarders are unique per source and destination."""
        created = self.email.create_forwarder(self.user, 'sales@alice.example', 'boss@elsewhere.test')
        self.assertTrue(self.panel.registrar.virtual.has_line('sales@alice.example boss@elsewhere.test'))
        with self.assertRaises(ConflictError):
            self.email.create_forwarder(self.user, 'sales@alice.example', 'boss@elsewhere.test')

        self.email.delete_forwarder(self.user, created['id'])
        self.assertEqual(self.email.list_forwarders(self.user), [])
        self.assertFalse(self.panel.registrar.virtual.has_key('sales@alice.example'))

    def test_autoresponder_requires_mailbox(self):
        """Vacation replies need an existing mailbox."""
        with self.assertRaises(ValidationError):
            self.email.set_autoresponder(self.user, 'ghost@alice.example', 'Away', 'Back soon')

    def test_autoresponder_replaces(self):
        """Setting a reply twice keeps one row."""
        self.email.create_account(self.user, 'info@alice.example', 'password123')
        self.email.set_autoresponder(self.user, 'info@alice.example', 'Away', 'Back soon')
        self.email.set_autoresponder(self.user, 'info@alice.example', 'Still away', 'Back later')
        rows = self.email.list_autoresponders(self.user)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['subject'], 'Still away')

    def test_dkim(self):
        """DKIM status comes from the mail settings row."""
        info = self.email.dkim(self.domain_of(self.account))
        self.assertEqual(info['domain'], 'alice.example')
        self.assertEqual(info['selector'], 'default')
        self.assertTrue(info['enabled'])


class QueueTestCase(PanelTestCase):
    def setUp(self):
        super().setUp()
        self.account = self.create_account('alice', 'alice.example')
        self.db.execute_query("UPDATE packages SET max_emails_per_hour=2 WHERE name='Starter'")
        self.now = datetime(2026, 10, 17, 10, 15)
        self.queue = MailQueue(self.db, self.panel.runner, clock=lambda: self.now)

    def send(self, n):
        return self.queue.send(self.account['id'], 'alice@alice.example', 'dest@remote.test',
                               f"Message {n}", 'Hello')


class TestMailQueue(QueueTestCase):
    """Rate limiting and queue processing."""

    def test_third_message_is_queued(self):
        """Two sends fit the hourly cap, the third waits for the next hour."""
        self.assertEqual(self.send(1), {'status': 'sent'})
        self.assertEqual(self.send(2), {'status': 'sent'})
        result = self.send(3)
        self.assertEqual(result['status'], 'queued')
        self.assertEqual(result['limit'], 'hourly')
        self.assertEqual(result['scheduled_at'], '2026-10-17 11:00:00')

        item = self.db.fetch_one("SELECT * FROM mail_queue WHERE id=?", (result['queue_id'],))
        self.assertEqual(item['status'], 'pending')
        self.assertEqual(self.queue.due_items(), [])

    def test_worker_sends_when_window_opens(self):
        """The queued item goes out once the hour has passed."""
        self.send(1)
        self.send(2)
        self.send(3)
        self.now = datetime(2026, 10, 17, 11, 20)
        self.assertEqual(self.queue.process_queue(), {'sent': 1})
        self.assertEqual(self.db.fetch_value("SELECT COUNT(*) FROM mail_queue"), 0)
        self.assertEqual(self.db.fetch_value("SELECT COUNT(*) FROM email_send_log"), 3)

    def test_due_item_rescheduled_while_over_limit(self):
        """An item that comes due while the cap is still full moves on."""
        self.send(1)
        self.send(2)
        queue_id = self.queue.enqueue(self.account['id'], 'alice@alice.example', 'dest@remote.test',
                                      'Late', 'Hello', scheduled_at=self.now)
        self.assertEqual(self.queue.process_queue(), {'rescheduled': 1})
        item = self.db.fetch_one("SELECT * FROM mail_queue WHERE id=?", (queue_id,))
        self.assertEqual(item['scheduled_at'], '2026-10-17 11:00:00')
        self.assertEqual(item['retry_count'], 0)

    def test_daily_limit(self):
        """The daily cap pushes to the next midnight."""
        self.db.execute_query("UPDATE packages SET max_emails_per_hour=100, max_emails_per_day=1 WHERE name='Starter'")
        self.send(1)
        result = self.send(2)
        self.assertEqual(result['limit'], 'daily')
        self.assertEqual(result['scheduled_at'], '2026-10-18 00:00:00')

    def test_retry_and_remove(self):
        """Admins can requeue and delete items."""
        queue_id = self.queue.enqueue(self.account['id'], 'a@alice.example', 'b@remote.test', 's', 'b',
                                      scheduled_at=self.now + timedelta(days=1))
        self.assertEqual(self.queue.retry(queue_id), 1)
        self.assertEqual(len(self.queue.due_items()), 1)
        self.assertEqual(self.queue.stats()['pending'], 1)
        self.assertEqual(self.queue.remove(queue_id), 1)
        self.assertEqual(self.queue.remove(queue_id), 0)

    def test_serialize_headers(self):
        """Stored headers come back as a list."""
        queue_id = self.queue.enqueue(self.account['id'], 'a@alice.example', 'b@remote.test', 's', 'b',
                                      headers={'X-One': '1', 'X-Two': '2'})
        item = self.queue.list_items(status='pending')[0]
        self.assertEqual(item['id'], queue_id)
        self.assertEqual(MailQueue.serialize(item)['headers'], ['X-One: 1', 'X-Two: 2'])

    def test_helpers(self):
        """Window boundaries and message text."""
        self.assertEqual(next_hour(datetime(2026, 10, 17, 23, 40)), datetime(2026, 10, 18, 0, 0))
        self.assertEqual(next_day(datetime(2026, 10, 17, 23, 40)), datetime(2026, 10, 18, 0, 0))
        message = build_message('a@x.test', 'b@y.test', 'Hi', 'Body', 'X-Tag: 1')
        self.assertEqual(message, 'From: a@x.test\nTo: b@y.test\nSubject: Hi\nX-Tag: 1\n\nBody')


class TestFailingDelivery(QueueTestCase):
    """Delivery failures back off and finally give up."""

    def make_runner(self):
        return ScriptedRunner(failing={'/usr/sbin/sendmail': 'connection refused'})

    def test_failure_reaches_failed(self):
        """Three failed attempts mark the item failed."""
        result = self.send(1)
        self.assertEqual(result['status'], 'queued')
        queue_id = result['queue_id']

        outcomes = []
        for minutes in (10, 30, 60):
            self.now = datetime(2026, 10, 17, 10, 15) + timedelta(minutes=minutes)
            item = self.db.fetch_one("SELECT * FROM mail_queue WHERE id=?", (queue_id,))
            outcomes.append(self.queue.process_item(item))
        self.assertEqual(outcomes, ['retry', 'retry', 'failed'])

        item = self.db.fetch_one("SELECT * FROM mail_queue WHERE id=?", (queue_id,))
        self.assertEqual(item['status'], 'failed')
        self.assertEqual(item['retry_count'], 3)
        self.assertEqual(item['error_message'], 'connection refused')
        self.assertEqual(self.queue.due_items(), [])

    def test_retry_backoff(self):
        """Each retry waits five minutes longer."""
        queue_id = self.send(1)['queue_id']
        self.now = datetime(2026, 10, 17, 10, 20)
        item = self.db.fetch_one("SELECT * FROM mail_queue WHERE id=?", (queue_id,))
        self.queue.process_item(item)
        item = self.db.fetch_one("SELECT * FROM mail_queue WHERE id=?", (queue_id,))
        self.assertEqual(item['scheduled_at'], '2026-10-17 10:25:00')

    def test_worker_tick(self):
        """A worker tick processes due items and survives errors."""
        self.send(1)
        self.now = datetime(2026, 10, 17, 10, 30)
        worker = MailWorker(self.queue, interval=0, batch=10)
        self.assertEqual(worker.tick(), {'retry': 1})
        worker.stop()
        self.assertTrue(worker.stop_event.is_set())


class RaisingRunner(ScriptedRunner):
    """Raises the way Popen does when sendmail cannot be executed."""

    def run(self, args, env=None, stdin=None, timeout=None, cwd=None):
        if str(args[0]).endswith('sendmail'):
            raise PermissionError(13, 'Permission denied', str(args[0]))
        return super().run(args, env=env, stdin=stdin, timeout=timeout, cwd=cwd)


class TestDeliveryException(QueueTestCase):
    """An exception during delivery never strands an item in processing."""

    def make_runner(self):
        return RaisingRunner()

    def test_exception_takes_retry_path(self):
        """The item goes back to pending with the error recorded."""
        queue_id = self.queue.enqueue(self.account['id'], 'alice@alice.example', 'dest@remote.test', 'Hi', 'Hello')
        item = self.db.fetch_one("SELECT * FROM mail_queue WHERE id=?", (queue_id,))
        self.assertEqual(self.queue.process_item(item), 'retry')

        item = self.db.fetch_one("SELECT * FROM mail_queue WHERE id=?", (queue_id,))
        self.assertEqual(item['status'], 'pending')
        self.assertEqual(item['retry_count'], 1)
        self.assertIn('PermissionError', item['error_message'])
        self.assertEqual(item['scheduled_at'], '2026-10-17 10:20:00')
        self.assertEqual(self.queue.stats()['processing'], 0)

    def test_worker_survives(self):
        """A worker tick reports the retry instead of crashing."""
        self.queue.enqueue(self.account['id'], 'alice@alice.example', 'dest@remote.test', 'Hi', 'Hello')
        worker = MailWorker(self.queue, interval=0, batch=10)
        self.assertEqual(worker.tick(), {'retry': 1})


if __name__ == '__main__':
    unittest.main()
