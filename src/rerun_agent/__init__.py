"""
rerun-agent - watches a remote job and reruns it when it fails.
"""

__version__ = "0.3.0"
