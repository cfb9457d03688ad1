"""
Error taxonomy shared by every component.
Components raise these; only the HTTP layer turns them into responses.
"""


class PanelError(Exception):
    status = 500

    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ValidationError(PanelError):
    status = 400


class AuthenticationError(PanelError):
    status = 401


class AuthorizationError(PanelError):
    status = 403

    def __init__(self, message='Access denied', status=None):
        super().__init__(message, status)


class NotFoundError(PanelError):
    status = 404


class ConflictError(PanelError):
    status = 409


class CommandError(PanelError):
    """A spawned program exited non-zero. Carries its captured output."""

    status = 500

    def __init__(self, args, returncode, output, message=None):
        self.args_list = list(args)
        self.returncode = returncode
        self.output = output or ''
        if message is None:
            message = f"{' '.join(self.args_list)} failed (exit {returncode})"
        if self.output.strip():
            message = f"{message}: {self.output.strip()}"
        super().__init__(message)
