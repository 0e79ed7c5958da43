"""HTTP endpoint module for osarunner.

Serves a single command pipeline over HTTP so scripts can be submitted
from other processes or machines.
"""
