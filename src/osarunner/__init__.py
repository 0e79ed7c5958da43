"""osarunner -- Persistent automation script runner.

This package runs automation-language snippets (AppleScript via
``osascript`` by default) through a single long-lived worker process
and hands each caller back the result of its own script.
"""

__version__ = "0.1.0"
