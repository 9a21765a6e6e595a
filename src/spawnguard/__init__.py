"""Safe external-program execution without shell interpretation."""

from spawnguard.lib.exec import FAILURE_EXIT, execute_argv, execute_shell

__version__ = "0.1.0"

__all__ = ["FAILURE_EXIT", "__version__", "execute_argv", "execute_shell"]
