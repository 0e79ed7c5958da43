"""Worker process for osarunner.

Started by the command pipeline as ``python -m osarunner.worker``.
"""

from osarunner.worker.loop import execute_command, run_worker

__all__ = ["execute_command", "run_worker"]
