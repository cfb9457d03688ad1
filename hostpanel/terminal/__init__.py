from .shell_gateway import ShellGateway, ShellSession, parse_resize

__all__ = ['ShellGateway', 'ShellSession', 'parse_resize']
