import threading
import time
import unittest
from datetime import datetime

from ..config import Config
from ..errors import ValidationError
from ..runner import CommandRunner
from ..tasks import Installer, TaskManager, build_steps
from ..tasks.task_manager import COMPLETED, FAILED, MAX_LOG_LINES, RUNNING


class StreamRunner:
    """Emits canned output and exit codes per program."""

    def __init__(self, codes=None):
        self.codes = codes or {}
        self.calls = []

    def stream(self, args, on_line, env=None, cwd=None):
        self.calls.append(args)
        on_line(f"running {args[0]}")
        return self.codes.get(args[0], 0)


def fixed_clock():
    return datetime(2026, 10, 17, 14, 5, 9)


class TestTaskManager(unittest.TestCase):
    """Task logs, subscribers and status frames."""

    def setUp(self):
        self.tasks = TaskManager(clock=fixed_clock)
        self.tasks.create('t1', 'software', 'software htop install')

    def test_log_lines_are_timestamped(self):
        """Each line carries the wall-clock time."""
        self.tasks.add_log('t1', 'hello')
        self.assertEqual(self.tasks.get('t1')['logs'], ['[14:05:09] hello'])

    def test_log_is_capped(self):
        """Only the newest lines are retained."""
        for i in range(150):
            self.tasks.add_log('t1', f"line {i}")
        logs = self.tasks.get('t1')['logs']
        self.assertEqual(len(logs), MAX_LOG_LINES)
        self.assertEqual(logs[0], '[14:05:09] line 50')
        self.assertEqual(logs[-1], '[14:05:09] line 149')

    def test_unknown_task(self):
        """Unknown ids are ignored or reported as None."""
        self.tasks.add_log('nope', 'x')
        self.tasks.complete('nope', True)
        self.assertIsNone(self.tasks.get('nope'))
        self.assertIsNone(self.tasks.subscribe('nope'))
        self.assertEqual(list(self.tasks.events('nope')), [])

    def test_snapshot(self):
        """Snapshots carry ISO timestamps and the final status."""
        self.tasks.complete('t1', False)
        snap = self.tasks.get('t1')
        self.assertEqual(snap['status'], FAILED)
        self.assertEqual(snap['started_at'], '2026-10-17T14:05:09')
        self.assertEqual(snap['ended_at'], '2026-10-17T14:05:09')
        self.assertEqual([t['id'] for t in self.tasks.list()], ['t1'])

    def test_events_of_finished_task(self):
        """A finished task replays its lines and then its status."""
        self.tasks.add_log('t1', 'one')
        self.tasks.complete('t1', True)
        frames = list(self.tasks.events('t1'))
        self.assertEqual(frames, [
            {'type': 'log', 'data': '[14:05:09] one'},
            {'type': 'status', 'status': COMPLETED},
        ])

    def test_events_replay_then_live(self):
        """A subscriber sees old lines, new lines, then the status, without duplicates."""
        self.tasks.add_log('t1', 'before')
        frames = self.tasks.events('t1', poll=0.05)
        self.assertEqual(next(frames), {'type': 'log', 'data': '[14:05:09] before'})

        def produce():
            self.tasks.add_log('t1', 'after')
            self.tasks.complete('t1', True)

        # The generator has subscribed, so lines published now are delivered live.
        producer = threading.Thread(target=produce)
        producer.start()
        rest = list(frames)
        producer.join()
        self.assertEqual(rest, [
            {'type': 'log', 'data': '[14:05:09] after'},
            {'type': 'status', 'status': COMPLETED},
        ])
        self.assertEqual(self.tasks._tasks['t1'].subscribers, [])

    def test_full_queue_does_not_block(self):
        """A slow subscriber loses lines but the producer and the status survive."""
        lines, status, q = self.tasks.subscribe('t1', maxsize=2)
        self.assertEqual((lines, status), ([], RUNNING))
        for i in range(10):
            self.tasks.add_log('t1', f"line {i}")
        self.tasks.complete('t1', True)
        self.assertEqual(q.qsize(), 2)
        self.assertEqual(len(self.tasks.get('t1')['logs']), 10)
        self.tasks.unsubscribe('t1', q)

    def test_lost_sentinel_falls_back_to_state(self):
        """A subscriber whose status frame was dropped still terminates."""
        task = self.tasks._tasks['t1']

        def finish():
            time.sleep(0.05)
            with self.tasks._lock:
                task.status = COMPLETED

        t = threading.Thread(target=finish)
        t.start()
        frames = list(self.tasks.events('t1', poll=0.01))
        t.join()
        self.assertEqual(frames, [{'type': 'status', 'status': COMPLETED}])

    def test_should_stop(self):
        """A closed client ends the stream without a status frame."""
        frames = list(self.tasks.events('t1', should_stop=lambda: True, poll=0.01))
        self.assertEqual(frames, [])

    def test_run_steps_success(self):
        """Every step is logged and the task completes."""
        runner = StreamRunner()
        ok = self.tasks.run_steps('t1', runner, [(['apt-get', 'update'], False), (['apt-get', 'install'], True)])
        self.assertTrue(ok)
        self.assertEqual(self.tasks.status('t1'), COMPLETED)
        self.assertIn('[14:05:09] $ apt-get update', self.tasks.get('t1')['logs'])

    def test_optional_failure_continues(self):
        """A failing optional step only logs."""
        runner = StreamRunner(codes={'systemctl': 5})
        ok = self.tasks.run_steps('t1', runner, [(['systemctl', 'stop'], False), (['apt-get', 'remove'], True)])
        self.assertTrue(ok)
        self.assertEqual(len(runner.calls), 2)
        self.assertIn('[14:05:09] exit status 5', self.tasks.get('t1')['logs'])

    def test_required_failure_stops(self):
        """A failing required step fails the task and skips the rest."""
        runner = StreamRunner(codes={'apt-get': 100})
        ok = self.tasks.run_steps('t1', runner, [(['apt-get', 'install'], True), (['systemctl', 'start'], False)])
        self.assertFalse(ok)
        self.assertEqual(runner.calls, [['apt-get', 'install']])
        self.assertEqual(self.tasks.status('t1'), FAILED)

    def test_crashing_runner(self):
        """An exception fails the task instead of leaving it running."""
        class Broken:
            def stream(self, args, on_line):
                raise OSError('no pty')

        self.assertFalse(self.tasks.run_steps('t1', Broken(), [(['true'], True)]))
        self.assertIn('[14:05:09] ERROR: no pty', self.tasks.get('t1')['logs'])


class TestBuildSteps(unittest.TestCase):
    """Installer requests to commands."""

    def test_php_install(self):
        """PHP installs pull the standard package set and start FPM."""
        steps = build_steps('php', 'install', '8.3')
        install = [args for args, required in steps if required][0]
        self.assertIn('php8.3-fpm', install)
        self.assertIn('php8.3-mbstring', install)
        self.assertIn((['systemctl', 'start', 'php8.3-fpm'], False), steps)

    def test_php_uninstall(self):
        """Uninstall stops the service before removing packages."""
        steps = build_steps('php', 'uninstall', '7.4')
        self.assertEqual(steps[0], (['systemctl', 'stop', 'php7.4-fpm'], False))
        self.assertEqual(steps[-1], (['apt-get', 'remove', '-y', 'php7.4-*'], True))

    def test_extension_and_module(self):
        """Extensions use the PHP version; modules toggle with a2enmod/a2dismod."""
        self.assertEqual(build_steps('php-extension', 'install', 'redis', '8.2')[0],
                         (['apt-get', 'install', '-y', 'php8.2-redis'], True))
        self.assertEqual(build_steps('apache-module', 'enable', 'rewrite')[0], (['a2enmod', 'rewrite'], True))
        self.assertEqual(build_steps('apache-module', 'disable', 'rewrite')[0], (['a2dismod', 'rewrite'], True))

    def test_rejects_bad_requests(self):
        """Unknown types, actions and unsafe names are refused."""
        bad = [
            ('docker', 'install', 'x', None),
            ('php', 'enable', '8.2', None),
            ('php', 'install', '8', None),
            ('php', 'install', '8.2; rm -rf /', None),
            ('software', 'install', 'htop && reboot', None),
            ('php-extension', 'install', 'redis', None),
        ]
        for args in bad:
            with self.assertRaises(ValidationError, msg=args):
                build_steps(*args)


class TestInstaller(unittest.TestCase):
    """Background installs in simulate mode."""

    def test_start_returns_immediately_and_completes(self):
        """The task id comes back at once and the task finishes."""
        tasks = TaskManager()
        installer = Installer(tasks, CommandRunner(simulate=True), Config(simulate=True, php_version='8.2'))
        task_id = installer.start('software', 'install', 'htop')
        self.assertTrue(task_id.startswith('software-install-htop-'))

        deadline = time.monotonic() + 5
        while tasks.status(task_id) == RUNNING and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(tasks.status(task_id), COMPLETED)
        logs = tasks.get(task_id)['logs']
        self.assertTrue(any('[simulate] apt-get install -y htop' in line for line in logs))

    def test_invalid_request_creates_nothing(self):
        """Validation happens before a task exists."""
        tasks = TaskManager()
        installer = Installer(tasks, CommandRunner(simulate=True), Config(simulate=True))
        with self.assertRaises(ValidationError):
            installer.start('software', 'install', 'bad name')
        self.assertEqual(tasks.list(), [])


if __name__ == '__main__':
    unittest.main()
