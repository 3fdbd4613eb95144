"""
Shared utilities for hostvol components.

This package contains common functionality used by the node agent, the
reference plugin backend and the status CLI:
- socket_protocol: newline-delimited JSON frames with a bounded size
- plugin_socket_client: AF_UNIX client for the plugin registration protocol
- agent_client: HTTP client for the agent status surface
- logging_config: consistent logging setup
"""
