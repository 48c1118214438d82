"""
ScriptHub - DevOps/SecOps command toolkit.

Each sub-command wraps a system, container or cloud CLI: validate the
flags, run the external tool, reformat its output, exit.
"""

__version__ = "0.1.0"
