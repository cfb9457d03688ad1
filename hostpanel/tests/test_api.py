"""
HTTP API tests against a simulate-mode panel.
Run with: python -m pytest hostpanel/tests/test_api.py -v
"""

import json
import threading
import time

from simple_websocket import ConnectionClosed

from ..api.ws import stream_task
from ..app import create_app
from ..auth import create_jwt_token
from ..tasks.task_manager import RUNNING
from .helpers import PanelTestCase

API = '/api/v1'


class FakeSocket:
    """Collects sent frames; receive blocks until the test hangs up."""

    def __init__(self):
        self.sent = []
        self.hangup = threading.Event()

    def send(self, data):
        self.sent.append(data)

    def receive(self, timeout=None):
        self.hangup.wait()
        raise ConnectionClosed()


class ApiTestCase(PanelTestCase):
    def setUp(self):
        super().setUp()
        self.app = create_app(panel=self.panel)
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()
        self.admin_token = self.login('admin', 'admin123')

    def login(self, username, password):
        response = self.client.post(f'{API}/auth/login', json={'username': username, 'password': password})
        self.assertEqual(response.status_code, 200, response.get_json())
        return response.get_json()['data']['token']

    def call(self, method, path, token=None, **kwargs):
        headers = {'Authorization': f'Bearer {token}'} if token else {}
        return getattr(self.client, method)(f'{API}{path}', headers=headers, **kwargs)

    def new_account(self, username='alice', domain='alice.example'):
        response = self.call('post', '/accounts', self.admin_token, json={
            'username': username, 'email': f'{username}@mail.test', 'password': 'secret123', 'domain': domain,
        })
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()['data']


class TestAuthApi(ApiTestCase):
    """Login, tokens and the response envelope."""

    def test_health(self):
        """Health needs no token."""
        response = self.client.get(f'{API}/health')
        self.assertEqual(response.status_code, 200)
        data = response.get_json()
        self.assertTrue(data['success'])
        self.assertEqual(data['data']['status'], 'ok')
        self.assertTrue(data['data']['simulate'])

    def test_login(self):
        """Valid credentials return a token and the user."""
        response = self.client.post(f'{API}/auth/login', json={'username': 'admin', 'password': 'admin123'})
        data = response.get_json()['data']
        self.assertEqual(data['user']['role'], 'admin')
        me = self.call('get', '/auth/me', data['token']).get_json()
        self.assertEqual(me['data']['username'], 'admin')

    def test_bad_login(self):
        """Wrong passwords are 401; missing fields are 400."""
        response = self.client.post(f'{API}/auth/login', json={'username': 'admin', 'password': 'nope'})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json(), {'success': False, 'error': 'Invalid credentials'})
        response = self.client.post(f'{API}/auth/login', json={'username': 'admin'})
        self.assertEqual(response.status_code, 400)
        self.assertIn('password', response.get_json()['error'])

    def test_missing_and_bad_tokens(self):
        """Protected routes need a valid token."""
        self.assertEqual(self.call('get', '/domains').status_code, 401)
        self.assertEqual(self.call('get', '/domains', 'garbage').status_code, 401)
        forged = create_jwt_token(1, 'admin', 'admin', 'wrong-secret')
        self.assertEqual(self.call('get', '/domains', forged).status_code, 401)

    def test_unknown_route_and_method(self):
        """Routing errors use the JSON envelope."""
        response = self.client.get(f'{API}/nowhere')
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()['success'])
        self.assertEqual(self.client.delete(f'{API}/health').status_code, 405)


class TestAccountsApi(ApiTestCase):
    """Admin account management."""

    def test_create_and_conflict(self):
        """Creation is 201, a duplicate is 409."""
        account = self.new_account()
        self.assertEqual(account['domain'], 'alice.example')
        response = self.call('post', '/accounts', self.admin_token, json={
            'username': 'alice', 'email': 'other@mail.test', 'password': 'secret123', 'domain': 'other.example',
        })
        self.assertEqual(response.status_code, 409)
        self.assertEqual(len(self.call('get', '/accounts', self.admin_token).get_json()['data']), 1)

    def test_validation_error(self):
        """Invalid usernames are 400."""
        response = self.call('post', '/accounts', self.admin_token, json={
            'username': 'X!', 'email': 'x@mail.test', 'password': 'secret123', 'domain': 'x.example',
        })
        self.assertEqual(response.status_code, 400)

    def test_tenant_cannot_manage_accounts(self):
        """Account routes are admin only."""
        self.new_account()
        token = self.login('alice', 'secret123')
        self.assertEqual(self.call('get', '/accounts', token).status_code, 403)

    def test_delete(self):
        """Admins delete tenants but never themselves."""
        account = self.new_account()
        self.assertEqual(self.call('delete', f"/accounts/{account['id']}", self.admin_token).status_code, 200)
        self.assertEqual(self.call('get', f"/accounts/{account['id']}", self.admin_token).status_code, 404)
        self.assertEqual(self.call('delete', '/accounts/1', self.admin_token).status_code, 400)

    def test_suspended_user(self):
        """Suspended tenants cannot log in or change anything."""
        account = self.new_account()
        token = self.login('alice', 'secret123')
        self.call('post', f"/accounts/{account['id']}/suspend", self.admin_token)

        response = self.client.post(f'{API}/auth/login', json={'username': 'alice', 'password': 'secret123'})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.call('get', '/databases', token).status_code, 200)
        response = self.call('post', '/databases', token, json={'name': 'shop', 'password': 'password123'})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()['error'], 'Account is suspended')

        self.call('post', f"/accounts/{account['id']}/unsuspend", self.admin_token)
        response = self.call('post', '/databases', token, json={'name': 'shop', 'password': 'password123'})
        self.assertEqual(response.status_code, 201)


class TestTenantApi(ApiTestCase):
    """Resources reached through a tenant token."""

    def setUp(self):
        super().setUp()
        self.account = self.new_account()
        self.token = self.login('alice', 'secret123')
        self.domain_id = self.account['domain_id']

    def test_domain_disclosure(self):
        """Foreign and missing domains are both 403 for tenants; admins get 404."""
        self.new_account('bob', 'bob.example')
        bob = self.login('bob', 'secret123')
        foreign = self.call('get', f'/domains/{self.domain_id}', bob)
        missing = self.call('get', '/domains/9999', bob)
        self.assertEqual(foreign.status_code, 403)
        self.assertEqual(foreign.get_json(), missing.get_json())
        self.assertEqual(self.call('get', '/domains/9999', self.admin_token).status_code, 404)
        self.assertEqual(len(self.call('get', '/domains', self.token).get_json()['data']), 1)

    def test_php_settings_are_clamped(self):
        """A tenant asking for 1G on Starter gets 256M."""
        response = self.call('put', f'/php/domains/{self.domain_id}/settings', self.token,
                             json={'settings': {'memory_limit': '1G'}})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['data']['memory_limit'], '256M')

        data = self.call('get', f'/php/domains/{self.domain_id}/settings', self.token).get_json()['data']
        self.assertEqual(data['settings']['memory_limit'], '256M')
        self.assertEqual(data['limits']['max_php_memory'], '256M')

        response = self.call('put', f'/php/domains/{self.domain_id}/settings', self.admin_token,
                             json={'memory_limit': '1G'})
        self.assertEqual(response.get_json()['data']['memory_limit'], '1G')

    def test_subdomains_and_dns(self):
        """Subdomains add an A record that DNS listing shows."""
        response = self.call('post', f'/domains/{self.domain_id}/subdomains', self.token, json={'name': 'blog'})
        self.assertEqual(response.status_code, 201)
        subdomain_id = response.get_json()['data']['id']
        records = self.call('get', f'/dns/{self.domain_id}/records', self.token).get_json()['data']
        self.assertIn('blog', [r['name'] for r in records])

        response = self.call('post', f'/dns/{self.domain_id}/records', self.token,
                             json={'name': 'txt', 'type': 'TXT', 'content': 'hello'})
        self.assertEqual(response.status_code, 201)
        response = self.call('post', f'/dns/{self.domain_id}/records', self.token,
                             json={'name': 'bad', 'type': 'A', 'content': 'not-an-ip'})
        self.assertEqual(response.status_code, 400)

        self.assertEqual(self.call('delete', f'/subdomains/{subdomain_id}', self.token).status_code, 200)

    def test_email_routes(self):
        """Mailboxes and forwarders round the API."""
        response = self.call('post', '/email/accounts', self.token,
                             json={'email': 'info@alice.example', 'password': 'password123'})
        self.assertEqual(response.status_code, 201)
        response = self.call('post', '/email/accounts', self.token,
                             json={'email': 'info@alice.example', 'password': 'password123'})
        self.assertEqual(response.status_code, 409)
        response = self.call('post', '/email/forwarders', self.token,
                             json={'source': 'sales@alice.example', 'destination': 'boss@remote.test'})
        self.assertEqual(response.status_code, 201)
        dkim = self.call('get', f'/email/dkim/{self.domain_id}', self.token).get_json()['data']
        self.assertEqual(dkim['domain'], 'alice.example')

    def test_mail_rate_limit(self):
        """With an hourly cap of two the third message is queued with 202."""
        self.db.execute_query("UPDATE packages SET max_emails_per_hour=2 WHERE name='Starter'")
        message = {'from': 'info@alice.example', 'to': 'dest@remote.test', 'subject': 'Hi', 'body': 'Hello',
                   'headers': ['X-Campaign: test']}
        statuses = [self.call('post', '/mail/send', self.token, json=message).status_code for _ in range(3)]
        self.assertEqual(statuses, [200, 200, 202])

        queue = self.call('get', '/mail-queue', self.admin_token).get_json()['data']
        self.assertEqual(len(queue), 1)
        self.assertEqual(queue[0]['headers'], ['X-Campaign: test'])
        self.assertEqual(self.call('get', '/mail-queue/stats', self.admin_token).get_json()['data']['pending'], 1)
        self.assertEqual(self.call('get', '/mail-queue', self.token).status_code, 403)

        item_id = queue[0]['id']
        self.assertEqual(self.call('delete', f'/mail-queue/{item_id}', self.admin_token).status_code, 200)
        self.assertEqual(self.call('delete', f'/mail-queue/{item_id}', self.admin_token).status_code, 404)

    def test_mail_from_foreign_domain(self):
        """Tenants only send as their own domains."""
        response = self.call('post', '/mail/send', self.token, json={
            'from': 'ceo@bank.example', 'to': 'x@remote.test', 'subject': 'Hi', 'body': 'Hello'})
        self.assertEqual(response.status_code, 403)

    def test_ssl_listing(self):
        """Every standard name of the domain is listed without a certificate."""
        data = self.call('get', '/ssl', self.token).get_json()['data']
        self.assertEqual(len(data), 5)
        self.assertTrue(all(entry['status'] == 'none' for entry in data))

    def test_ssl_routes_refuse_foreign_names(self):
        """Renew and revoke only act on names under the caller's domain."""
        self.new_account('bob', 'bob.example')
        self.panel.driver.write('bob.example-ssl', '# ssl')
        for route in ('/ssl/renew', '/ssl/revoke'):
            response = self.call('post', route, self.token, json={'domain_id': self.domain_id, 'fqdn': 'bob.example'})
            self.assertEqual(response.status_code, 400, route)
        self.assertTrue(self.panel.driver.vhost_exists('bob.example-ssl'))

    def test_databases(self):
        """Database names come back prefixed."""
        response = self.call('post', '/databases', self.token, json={'name': 'shop', 'password': 'password123'})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['data']['name'], 'alice_shop')
        response = self.call('post', '/databases', self.token, json={'name': 'blog', 'password': 'password123'})
        self.assertEqual(response.status_code, 400)


class TestTasksApi(ApiTestCase):
    """Installer tasks over HTTP and the task log socket."""

    def wait_for(self, task_id):
        deadline = time.monotonic() + 5
        while self.panel.tasks.status(task_id) == RUNNING and time.monotonic() < deadline:
            time.sleep(0.01)

    def test_install_start(self):
        """Starting an install is 202 and the task can be polled."""
        response = self.call('post', '/install/start', self.admin_token,
                             json={'type': 'software', 'action': 'install', 'target': 'htop'})
        self.assertEqual(response.status_code, 202)
        task_id = response.get_json()['data']['task_id']
        self.wait_for(task_id)

        task = self.call('get', f'/tasks/{task_id}', self.admin_token).get_json()['data']
        self.assertEqual(task['status'], 'completed')
        self.assertEqual(self.call('get', '/tasks/unknown', self.admin_token).status_code, 404)
        self.assertEqual(len(self.call('get', '/tasks', self.admin_token).get_json()['data']), 1)

    def test_invalid_install(self):
        """Unknown task types are 400."""
        response = self.call('post', '/install/start', self.admin_token,
                             json={'type': 'kernel', 'action': 'install', 'target': 'x'})
        self.assertEqual(response.status_code, 400)

    def test_php_versions(self):
        """Version routes list the installed FPM versions and start tasks."""
        self.new_account()
        data = self.call('get', '/php/versions', self.admin_token).get_json()['data']
        self.assertEqual(data, {'installed': ['8.2'], 'default': '8.2'})
        response = self.call('post', '/php/versions/8.3/install', self.admin_token)
        self.assertEqual(response.status_code, 202)
        self.wait_for(response.get_json()['data']['task_id'])

    def test_task_routes_are_admin_only(self):
        """Tenants cannot start or read tasks."""
        self.new_account()
        token = self.login('alice', 'secret123')
        self.assertEqual(self.call('get', '/tasks', token).status_code, 403)

    def test_stream_task_socket(self):
        """The socket replays a finished task's log and then its status."""
        self.panel.tasks.create('t1', 'software', 'software htop install')
        self.panel.tasks.add_log('t1', 'done')
        self.panel.tasks.complete('t1', True)

        ws = FakeSocket()
        with self.app.test_request_context(f'/ws/tasks/t1?token={self.admin_token}'):
            stream_task(ws, 't1')
        ws.hangup.set()
        frames = [json.loads(f) for f in ws.sent]
        self.assertEqual(frames[0]['type'], 'log')
        self.assertTrue(frames[0]['data'].endswith('done'))
        self.assertEqual(frames[-1], {'type': 'status', 'status': 'completed'})

    def test_stream_task_socket_rejects_tenants(self):
        """Only admins may watch task logs."""
        self.new_account()
        token = self.login('alice', 'secret123')
        ws = FakeSocket()
        with self.app.test_request_context(f'/ws/tasks/t1?token={token}'):
            stream_task(ws, 't1')
        self.assertEqual(json.loads(ws.sent[0]), {'type': 'error', 'error': 'Access denied'})
