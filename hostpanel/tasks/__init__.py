from .installers import Installer, build_steps
from .task_manager import TaskManager

__all__ = ['Installer', 'TaskManager', 'build_steps']
