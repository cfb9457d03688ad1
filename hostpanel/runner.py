"""
Uniform execution of external programs.
Every fork/exec in the panel goes through CommandRunner so simulate mode
covers the whole system.
"""

import os
import subprocess
import logging

from .errors import CommandError

logger = logging.getLogger(__name__)

# Variables the wrapped tools expect to find even when the panel runs
# from an init system with a stripped environment.
DEFAULT_ENV = {
    'HOME': '/root',
    'USER': 'root',
    'NVM_DIR': '/root/.nvm',
    'DEBIAN_FRONTEND': 'noninteractive',
    'PATH': '/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin',
}


class CommandResult:
    """Exit status plus the combined stdout/stderr of one invocation."""

    def __init__(self, args, returncode, output):
        self.args = list(args)
        self.returncode = returncode
        self.output = output

    @property
    def ok(self):
        return self.returncode == 0

    def check(self):
        if self.returncode != 0:
            raise CommandError(self.args, self.returncode, self.output)
        return self

    def __repr__(self):
        return f"CommandResult({self.args!r}, returncode={self.returncode})"


class CommandRunner:
    def __init__(self, simulate=False, default_timeout=None):
        self.simulate = simulate
        self.default_timeout = default_timeout

    def _environment(self, env):
        merged = dict(os.environ)
        for key, value in DEFAULT_ENV.items():
            merged.setdefault(key, value)
        merged['DEBIAN_FRONTEND'] = 'noninteractive'
        if env:
            merged.update(env)
        return merged

    def run(self, args, env=None, stdin=None, timeout=None, cwd=None) -> CommandResult:
        """Run a program to completion and capture combined output."""
        args = [str(a) for a in args]
        if self.simulate:
            logger.info(f"[simulate] {' '.join(args)}")
            return CommandResult(args, 0, '')

        timeout = timeout if timeout is not None else self.default_timeout
        try:
            proc = subprocess.run(
                args,
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self._environment(env),
                cwd=cwd,
                timeout=timeout,
            )
        except FileNotFoundError:
            logger.error(f"Command not found: {args[0]}")
            return CommandResult(args, 127, f"{args[0]}: command not found")
        except subprocess.TimeoutExpired as e:
            output = e.output or ''
            if isinstance(output, bytes):
                output = output.decode('utf-8', 'replace')
            logger.error(f"Command timed out after {timeout}s: {' '.join(args)}")
            return CommandResult(args, -9, f"{output}\ntimed out after {timeout}s")

        return CommandResult(args, proc.returncode, proc.stdout or '')

    def check(self, args, **kwargs) -> CommandResult:
        """Like run() but raises CommandError on a non-zero exit."""
        return self.run(args, **kwargs).check()

    def stream(self, args, on_line, env=None, cwd=None) -> int:
        """Run a program and hand each output line to on_line as it appears."""
        args = [str(a) for a in args]
        if self.simulate:
            logger.info(f"[simulate] {' '.join(args)}")
            on_line(f"[simulate] {' '.join(args)}")
            return 0

        try:
            process = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                env=self._environment(env),
                cwd=cwd,
            )
        except FileNotFoundError:
            on_line(f"{args[0]}: command not found")
            return 127

        with process.stdout:
            for line in process.stdout:
                on_line(line.rstrip('\n'))
        return process.wait()
