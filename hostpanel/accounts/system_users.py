"""
POSIX users backing hosting accounts.
Each account gets a login user with a bash shell and a home directory
under the configured home base.
"""

import os
import pwd
import time
import shutil
import logging

from ..errors import CommandError, ConflictError

logger = logging.getLogger(__name__)

HOME_DIRS = ('public_html', 'logs', 'tmp', 'mail', 'ssl')
HTACCESS = "# Security headers\nOptions -Indexes\n"


class SystemUserManager:
    def __init__(self, config, runner):
        self.config = config
        self.runner = runner

    def home_dir(self, username):
        return self.config.home_dir(username)

    def exists(self, username):
        if self.config.simulate:
            return os.path.isdir(self.home_dir(username))
        try:
            pwd.getpwnam(username)
            return True
        except KeyError:
            return False

    def create(self, username):
        """
        Create the login user, or adopt one a previous attempt left behind.

        A user that already exists is reused only when it has a public_html,
        i.e. it was created by the panel; anything else is a conflict.
        Returns True when a new user was created.
        """
        home = self.home_dir(username)
        if self.exists(username):
            if os.path.isdir(os.path.join(home, 'public_html')):
                logger.warning(f"System user {username} already exists, reusing it")
                return False
            raise ConflictError(f"System user '{username}' already exists (not created by the panel)")

        result = self.runner.run(['useradd', '-m', '-d', home, '-s', '/bin/bash', username])
        if not result.ok:
            logger.error(f"useradd failed: {result.output.strip()}")
            raise CommandError(result.args, result.returncode, result.output,
                               message=f"Failed to create system user {username}")
        if self.config.simulate:
            os.makedirs(home, exist_ok=True)
        logger.info(f"System user created: {username}")
        return True

    def create_tree(self, username, htaccess=True):
        """public_html, logs, tmp, mail and ssl under the home; home 0711, public_html 0755."""
        home = self.home_dir(username)
        for name in HOME_DIRS:
            os.makedirs(os.path.join(home, name), exist_ok=True)
        os.chmod(home, 0o711)
        os.chmod(os.path.join(home, 'public_html'), 0o755)

        if htaccess:
            path = os.path.join(home, 'public_html', '.htaccess')
            with open(path, 'w') as f:
                f.write(HTACCESS)
            os.chmod(path, 0o644)

        self.chown(username, home, recursive=True)
        logger.info(f"Home directory prepared: {home}")
        return home

    def chown(self, username, path, recursive=False):
        args = ['chown']
        if recursive:
            args.append('-R')
        result = self.runner.run(args + [f"{username}:{username}", path])
        if not result.ok:
            logger.warning(f"chown {path} failed: {result.output.strip()}")

    def kill_processes(self, username, settle=1.0):
        """SIGKILL everything the user owns. No matching process is fine."""
        result = self.runner.run(['pkill', '-9', '-u', username])
        # pkill exits 1 when nothing matched
        if result.returncode not in (0, 1):
            logger.warning(f"pkill for {username} failed: {result.output.strip()}")
        if not self.config.simulate and settle:
            time.sleep(settle)

    def delete(self, username):
        """Remove the user and its home. The home tree is unlinked even if userdel fails."""
        home = self.home_dir(username)
        result = self.runner.run(['userdel', '-r', username])
        if not result.ok:
            logger.warning(f"userdel -r {username} failed: {result.output.strip()}")
            retry = self.runner.run(['userdel', username])
            if not retry.ok:
                logger.warning(f"userdel {username} failed: {retry.output.strip()}")

        if os.path.lexists(home):
            shutil.rmtree(home, ignore_errors=True)
        if os.path.lexists(home):
            raise CommandError(['rm', '-rf', home], 1, '', message=f"Home directory {home} could not be removed")
        logger.info(f"System user deleted: {username}")
