"""
hostvol: node-local volume agent

Runs once per worker node and binds host paths into workloads.
Responsibilities:
- Validate host paths against declared path types
- Create missing paths when the declared type allows it
- Track which workloads reference which host paths (refcounted)
- Discover plugin backends over local sockets and track their liveness
- Retry stuck binds with backoff until the host state is fixed
"""

__version__ = "0.1.0"
