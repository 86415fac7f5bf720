"""Bridge that exposes a cloud drive as a local WebDAV server."""
