"""
Reference storage backend for the hostvol plugin registration protocol.

Binds <registration_dir>/<backend_id>.sock and answers identify and
heartbeat requests. Useful for local testing of the node agent and as a
template for real backends.
"""

from hostvol_plugin.plugin_server import PluginSocketServer

__all__ = ["PluginSocketServer"]
