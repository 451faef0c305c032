"""
tod CLI - interactive terminal driver for the agent.
"""

from tod.cli.repl import Repl, Runtime, build_runtime, main

__all__ = ["Repl", "Runtime", "build_runtime", "main"]
