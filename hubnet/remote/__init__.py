"""
Remote execution port and its SSH implementation
"""

from .executor import CommandResult, RemoteExecutor, SSHExecutor

__all__ = ["CommandResult", "RemoteExecutor", "SSHExecutor"]
