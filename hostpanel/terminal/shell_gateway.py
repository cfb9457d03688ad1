"""
Interactive login shells on pseudo-terminals.

Admins get a root shell in /root; everyone else gets a shell in their home
with uid and gid dropped to their POSIX account before exec.
"""

import os
import pty
import pwd
import time
import fcntl
import select
import signal
import struct
import termios
import logging
import threading

from ..errors import NotFoundError

logger = logging.getLogger(__name__)

RESIZE_PREFIX = 0x01
DEFAULT_ROWS = 24
DEFAULT_COLS = 80
SHELL = '/bin/bash'


def parse_resize(message):
    """(rows, cols) for a b'\\x01<rows>,<cols>' frame, else None."""
    if isinstance(message, str):
        message = message.encode('utf-8')
    if not message or message[0] != RESIZE_PREFIX:
        return None
    try:
        rows, cols = message[1:].decode('ascii').split(',')
        rows, cols = int(rows), int(cols)
    except ValueError:
        return None
    if not (0 < rows < 65536 and 0 < cols < 65536):
        return None
    return rows, cols


def set_winsize(fd, rows, cols):
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack('HHHH', rows, cols, 0, 0))


def shell_env(home, username):
    env = dict(os.environ)
    env.update({
        'TERM': 'xterm-256color',
        'HOME': home,
        'USER': username,
        'SHELL': SHELL,
        'LANG': 'en_US.UTF-8',
        'LC_ALL': 'en_US.UTF-8',
    })
    return env


class ShellSession:
    def __init__(self, session_id, user, pid, fd):
        self.id = session_id
        self.user_id = user['user_id']
        self.username = user['username']
        self.role = user['role']
        self.pid = pid
        self.fd = fd
        self.closed = False

    def write(self, data):
        if isinstance(data, str):
            data = data.encode('utf-8')
        os.write(self.fd, data)

    def read(self, timeout=1.0):
        """Up to 4 KiB of output; b'' on timeout, None once the shell has gone away."""
        try:
            ready, _, _ = select.select([self.fd], [], [], timeout)
            if not ready:
                return b''
            data = os.read(self.fd, 4096)
        except (OSError, ValueError):
            return None
        return data or None

    def resize(self, rows, cols):
        set_winsize(self.fd, rows, cols)

    def handle_input(self, message):
        """Apply a client frame: resize frames are consumed, anything else goes to the shell."""
        size = parse_resize(message)
        if size is not None:
            self.resize(*size)
            return
        if isinstance(message, (bytes, bytearray)) and message[:1] == bytes([RESIZE_PREFIX]):
            return
        self.write(message)

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            os.kill(self.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        try:
            os.waitpid(self.pid, 0)
        except ChildProcessError:
            pass
        try:
            os.close(self.fd)
        except OSError:
            pass


class ShellGateway:
    """Registry of live shell sessions for this process."""

    def __init__(self, config):
        self.config = config
        self._sessions = {}
        self._lock = threading.Lock()

    def sessions(self):
        with self._lock:
            return list(self._sessions.values())

    def _target(self, user):
        if user['role'] == 'admin':
            return '/root', None
        home = self.config.home_dir(user['username'])
        if not os.path.isdir(home):
            raise NotFoundError("Home directory not found")
        if self.config.simulate:
            return home, None
        try:
            entry = pwd.getpwnam(user['username'])
        except KeyError:
            raise NotFoundError(f"No system user {user['username']}")
        return home, entry

    def open(self, user):
        home, entry = self._target(user)
        env = shell_env(home, user['username'])

        pid, fd = pty.fork()
        if pid == 0:
            try:
                os.chdir(home)
                if entry is not None:
                    os.initgroups(entry.pw_name, entry.pw_gid)
                    os.setgid(entry.pw_gid)
                    os.setuid(entry.pw_uid)
                os.execve(SHELL, ['bash', '-l'], env)
            finally:
                os._exit(1)

        set_winsize(fd, DEFAULT_ROWS, DEFAULT_COLS)
        session = ShellSession(f"term-{time.time_ns()}", user, pid, fd)
        with self._lock:
            self._sessions[session.id] = session
        logger.info(f"Shell opened for {user['username']} (pid {pid})")
        return session

    def close(self, session):
        session.close()
        with self._lock:
            self._sessions.pop(session.id, None)
        logger.info(f"Shell closed for {session.username}")

    def close_all(self):
        for session in self.sessions():
            self.close(session)
